"""
Services package - Daemon services.

Contains:
- DaemonStateManager: lifecycle state machine with circuit breaker
- SessionManager: unlock session tracking and auto-lock
- ValidationPipeline: admission checks and rate limiting
- ApprovalService / TerminalApprovalGate: human confirmation
- DaemonService: orchestrator for both transports
"""

from .state import DaemonState, DaemonStateManager
from .session import SessionManager
from .validation import ValidationError, ValidationPipeline, RateLimiter
from .permissions import OriginPermissions
from .approval import ApprovalGate, ApprovalService, TerminalApprovalGate, UserRejectedError
from .broadcaster import Broadcaster, BroadcastError, Web3Broadcaster
from .daemon import DaemonService

__all__ = [
    "DaemonState",
    "DaemonStateManager",
    "SessionManager",
    "ValidationError",
    "ValidationPipeline",
    "RateLimiter",
    "OriginPermissions",
    "ApprovalGate",
    "ApprovalService",
    "TerminalApprovalGate",
    "UserRejectedError",
    "Broadcaster",
    "BroadcastError",
    "Web3Broadcaster",
    "DaemonService",
]
