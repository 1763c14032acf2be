"""
Storage verification of generated artifacts.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from ...storage import StorageNotFoundError

logger = logging.getLogger(__name__)


@dataclass
class ArtifactCheck:
    key: str
    exists: bool
    size: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class VerificationReport:
    checks: List[ArtifactCheck] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return bool(self.checks) and all(check.ok for check in self.checks)

    @property
    def errors(self) -> List[str]:
        if not self.checks:
            return ['no artifacts produced']
        return [check.error for check in self.checks if check.error]

    @property
    def error_message(self) -> Optional[str]:
        errors = self.errors
        return '; '.join(errors) if errors else None


class ArtifactVerifier:
    """
    Confirms each artifact exists in storage and is at least ``min_bytes``
    long, rejecting corrupt or placeholder outputs.
    """

    def __init__(self, store, min_bytes: int = 256):
        self.store = store
        self.min_bytes = min_bytes

    def verify(self, bucket: str, keys: Iterable[str]) -> VerificationReport:
        report = VerificationReport()
        for key in keys:
            try:
                info = self.store.head(bucket, key)
            except StorageNotFoundError:
                report.checks.append(ArtifactCheck(key=key, exists=False,
                                                   error=f"artifact missing: {key}"))
                continue
            check = ArtifactCheck(key=key, exists=True, size=info.size)
            if info.size < self.min_bytes:
                check.error = (f"artifact too small: {key} is {info.size} bytes "
                               f"(minimum {self.min_bytes})")
            report.checks.append(check)

        if not report.ok:
            logger.warning(f"Artifact verification failed in {bucket}: {report.error_message}")
        return report
