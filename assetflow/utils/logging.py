"""
Logging utilities for AssetFlow
Structured logging, console logging setup and per-stage pipeline statistics
"""

import json
import logging
import sys
from typing import Optional, Dict, Any
from datetime import datetime

import colorlog

logger = logging.getLogger(__name__)

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

class StructuredLogger:
    """Logs ``"message | {json}"`` lines carrying entity and stage context"""

    def __init__(self, name: str, metadata: Optional[Dict[str, Any]] = None):
        """
        Initialize structured logger

        Args:
            name: Logger name
            metadata: Default metadata to include in all logs
        """
        self.logger = logging.getLogger(name)
        self.metadata = metadata or {}

    def bind(self, **metadata) -> 'StructuredLogger':
        """Child logger with extra default metadata"""
        return StructuredLogger(self.logger.name, {**self.metadata, **metadata})

    def _format_message(self, message: str, **kwargs) -> str:
        data = {**self.metadata, **kwargs}
        if data:
            return f"{message} | {json.dumps(data, default=str, sort_keys=True)}"
        return message

    def info(self, message: str, **kwargs):
        self.logger.info(self._format_message(message, **kwargs))

    def error(self, message: str, **kwargs):
        self.logger.error(self._format_message(message, **kwargs))


class PipelineStats:
    """Tracks stage outcomes across one or more pipeline runs"""

    def __init__(self):
        self.start_time = datetime.now()
        self.outcomes: Dict[str, Dict[str, int]] = {}
        self.errors = []

    def add_outcome(self, stage: str, outcome: str, error: Optional[str] = None):
        """
        Record a stage outcome

        Args:
            stage: Stage name
            outcome: One of success, skip, fail, defer
            error: Error message for failures
        """
        per_stage = self.outcomes.setdefault(stage, {})
        per_stage[outcome] = per_stage.get(outcome, 0) + 1
        if error:
            self.errors.append({'stage': stage, 'error': error, 'time': datetime.now()})

    def get_elapsed_time(self) -> float:
        return (datetime.now() - self.start_time).total_seconds()

    def get_summary(self) -> Dict[str, Any]:
        totals: Dict[str, int] = {}
        for per_stage in self.outcomes.values():
            for outcome, count in per_stage.items():
                totals[outcome] = totals.get(outcome, 0) + count
        return {
            'stages': self.outcomes,
            'totals': totals,
            'errors': len(self.errors),
            'elapsed_time': self.get_elapsed_time(),
        }

    def print_summary(self):
        """Print pipeline summary to console"""
        summary = self.get_summary()

        print("\n" + "=" * 60)
        print("PIPELINE SUMMARY")
        print("=" * 60)
        for stage, per_stage in summary['stages'].items():
            counts = ", ".join(f"{k}={v}" for k, v in sorted(per_stage.items()))
            print(f"  {stage:<32} {counts}")
        print(f"\nErrors:           {summary['errors']}")
        print(f"Elapsed time:     {summary['elapsed_time']:.1f}s")
        print("=" * 60)

        if self.errors:
            print("\nERRORS:")
            for error in self.errors[:10]:
                print(f"  - {error['stage']}: {error['error']}")
            if len(self.errors) > 10:
                print(f"  ... and {len(self.errors) - 10} more errors")

def setup_console_logging(level: str = "INFO", color: bool = True,
                          fmt: str = DEFAULT_FORMAT):
    """
    Setup console logging with optional color support

    Args:
        level: Logging level
        color: Whether to use colored output
        fmt: Log record format
    """
    console_handler = logging.StreamHandler(sys.stdout)

    if color and sys.stdout.isatty():
        formatter = colorlog.ColoredFormatter(
            '%(log_color)s' + fmt.replace('%(message)s', '%(reset)s%(message)s'),
            log_colors={
                'DEBUG': 'cyan',
                'INFO': 'green',
                'WARNING': 'yellow',
                'ERROR': 'red',
                'CRITICAL': 'red,bg_white',
            }
        )
    else:
        formatter = logging.Formatter(fmt)

    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    root_logger.addHandler(console_handler)
