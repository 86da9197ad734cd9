"""
Input defense - task sanitizing, canary markers and output verification.
"""

from .defense import DefenseService, ProtectedTask, ValidationResult, generate_canary

__all__ = ["DefenseService", "ProtectedTask", "ValidationResult", "generate_canary"]
