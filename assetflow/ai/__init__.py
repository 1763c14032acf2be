"""
AI vendor clients and tenant policy gates.
"""

from .client import AIVendorClient, GeminiVisionClient, create_ai_client
from .policy import AiTagPolicy, PolicyDecision

__all__ = ['AIVendorClient', 'GeminiVisionClient', 'create_ai_client', 'AiTagPolicy', 'PolicyDecision']
