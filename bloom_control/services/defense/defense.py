"""
Input Defense Service - guards the agent against malicious task input.

1. Input validation - reject blocked keywords and patterns outright
2. Sanitization - normalize whitespace, strip control characters, cap length
3. Canary markers - per-task token that legitimate output never reproduces
4. Output validation - detect a reproduced canary (prompt injection)
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Pattern

from loguru import logger

from ...utils.identifiers import generate_verification_token


CANARY_PREFIX = "BLOOM_CANARY_"
CANARY_SUFFIX = "_END"
CANARY_WRAPPER = "\U0001F33F"
MARKER_FIELD = "INTERNAL_VERIFICATION"

DEFAULT_MAX_TASK_LENGTH = 5000

DEFAULT_BLOCKED_KEYWORDS: List[str] = [
    # Destructive shell commands
    "rm -rf /",
    "sudo rm",
    "mkfs",
    "dd if=",
    ":(){:|:&};:",
    # Destructive SQL
    "DROP TABLE",
    "DROP DATABASE",
    "DELETE FROM",
    "TRUNCATE TABLE",
    # Exfiltration
    "nc -e",
    "bash -i",
    "/dev/tcp/",
    # Prompt manipulation
    "ignore previous instructions",
    "ignore all instructions",
    "disregard your instructions",
    "forget your instructions",
    "new system prompt",
    "override system",
    "you are now",
    "pretend you are",
    "act as if",
    "jailbreak",
    "DAN mode",
]

DEFAULT_BLOCKED_PATTERNS: List[Pattern] = [
    # Download piped into a decoder or a shell
    re.compile(r"curl\s.*\|.*base64", re.IGNORECASE),
    re.compile(r"wget\s.*&&.*\bsh\b", re.IGNORECASE),
    # Base64 encoded commands
    re.compile(r"echo\s+[A-Za-z0-9+/=]{20,}\s*\|\s*base64\s+-d", re.IGNORECASE),
    # Reverse shells
    re.compile(r"\b(nc|netcat|ncat)\s+.*\s+-[elp]", re.IGNORECASE),
    # Secret environment variables
    re.compile(r"\$\{?\w*PASSWORD\w*\}?|\$\{?\w*SECRET\w*\}?|\$\{?\w*TOKEN\w*\}?", re.IGNORECASE),
    # Zero-width padding
    re.compile(r"[\u200B-\u200D\uFEFF]{10,}"),
    # Chat template control tokens
    re.compile(r"\[INST\]|\[/INST\]|<\|im_start\|>|<\|im_end\|>", re.IGNORECASE),
    # System credential files
    re.compile(r"/etc/(passwd|shadow|sudoers)", re.IGNORECASE),
    # SSH keys
    re.compile(r"\.ssh/(id_rsa|authorized_keys)", re.IGNORECASE),
]

# Control characters except tab/newline/carriage return
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
WHITESPACE_RUN = re.compile(r"\s+")


@dataclass
class ProtectedTask:
    """Result of protect_task."""
    sanitized_task: str
    task_with_canary: str
    canary: str
    warnings: List[str] = field(default_factory=list)


@dataclass
class ValidationResult:
    valid: bool
    issues: List[str] = field(default_factory=list)


def generate_canary() -> str:
    """Generate a unique canary marker that should never appear in legitimate output."""
    return f"{CANARY_WRAPPER}{CANARY_PREFIX}{generate_verification_token()}{CANARY_SUFFIX}{CANARY_WRAPPER}"


class DefenseService:
    """Sanitizes task input and verifies agent output."""

    def __init__(
        self,
        max_task_length: int = DEFAULT_MAX_TASK_LENGTH,
        blocked_keywords: Optional[List[str]] = None,
        blocked_patterns: Optional[List[Pattern]] = None
    ):
        self.max_task_length = max_task_length
        self.blocked_keywords = DEFAULT_BLOCKED_KEYWORDS if blocked_keywords is None else blocked_keywords
        self.blocked_patterns = DEFAULT_BLOCKED_PATTERNS if blocked_patterns is None else blocked_patterns

    def sanitize_task(self, task: str) -> tuple[str, List[str]]:
        """
        Normalize a task for storage and transmission.

        Returns:
            Tuple of (sanitized task, warnings)
        """
        warnings: List[str] = []

        sanitized = CONTROL_CHARS.sub("", task)
        sanitized = WHITESPACE_RUN.sub(" ", sanitized).strip()

        if len(sanitized) > self.max_task_length:
            warnings.append(f"Task truncated from {len(sanitized)} to {self.max_task_length} characters")
            sanitized = sanitized[:self.max_task_length]

        return sanitized, warnings

    @staticmethod
    def embed_canary(sanitized_task: str, canary: str) -> str:
        """Payload sent to the agent: the task followed by the canary marker."""
        return f"{sanitized_task}\n\n[{MARKER_FIELD}: {canary}]"

    def protect_task(self, task: str) -> ProtectedTask:
        """
        Sanitize a task and append a fresh canary marker.

        The sanitized task is what gets stored and displayed; the
        canary-augmented payload is what gets sent to the agent.
        """
        sanitized, warnings = self.sanitize_task(task)
        canary = generate_canary()
        task_with_canary = self.embed_canary(sanitized, canary)

        for warning in warnings:
            logger.warning(warning)

        return ProtectedTask(
            sanitized_task=sanitized,
            task_with_canary=task_with_canary,
            canary=canary,
            warnings=warnings,
        )

    def validate_input(self, task: str) -> ValidationResult:
        """
        Reject (not sanitize) empty, oversized or blocked task input.
        Every matching rule is reported.
        """
        if not task or not task.strip():
            return ValidationResult(valid=False, issues=["Task cannot be empty"])

        if len(task) > self.max_task_length:
            return ValidationResult(
                valid=False,
                issues=[f"Task exceeds maximum length of {self.max_task_length} characters"],
            )

        issues: List[str] = []
        task_lower = task.lower()

        for keyword in self.blocked_keywords:
            if keyword.lower() in task_lower:
                issues.append(f'Blocked keyword detected: "{keyword}"')

        for pattern in self.blocked_patterns:
            if pattern.search(task):
                issues.append(f"Blocked pattern detected: {pattern.pattern[:30]}...")

        if issues:
            logger.warning(f"Task rejected: {issues}")

        return ValidationResult(valid=not issues, issues=issues)

    def validate_output(self, output: str, canary: str) -> ValidationResult:
        """
        Check agent output for a reproduced canary.

        Any hit means the agent echoed the injected marker and its output
        must be treated as untrusted.
        """
        issues: List[str] = []

        if canary and canary in output:
            issues.append("Canary marker detected in output - potential prompt injection")

        if CANARY_PREFIX in output or f"{CANARY_SUFFIX}{CANARY_WRAPPER}" in output:
            issues.append("Partial canary pattern detected in output")

        if MARKER_FIELD in output:
            issues.append("Internal verification marker detected in output")

        if issues:
            logger.warning(f"Output failed verification: {issues}")

        return ValidationResult(valid=not issues, issues=issues)
