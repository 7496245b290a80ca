"""Centralized configuration for the mediation layer."""

import os


class Config:
    """
    Mediation configuration with environment variable overrides.

    This is the only module that reads the environment. Guards, ledger and
    coordinator receive every value explicitly through the session.
    """

    @staticmethod
    def _parse_int(name: str, default: str) -> int:
        """Parse an integer environment variable."""
        raw = os.getenv(name, default)
        try:
            return int(raw)
        except ValueError as e:
            raise ValueError(f"Invalid {name} environment variable: {e}")

    # ========================================================================
    # Policy
    # ========================================================================
    MEDIATION_POLICY_PATH: str = os.getenv("MEDIATION_POLICY_PATH", "./mediation.yaml")
    # Used when no policy file exists: the directory the agent was started in
    MEDIATION_DEFAULT_ROOT: str = os.getenv("MEDIATION_DEFAULT_ROOT", ".")
    DEFAULT_MAX_FILE_SIZE: int = _parse_int.__func__(
        "DEFAULT_MAX_FILE_SIZE", str(10 * 1024 * 1024)
    )
    DEFAULT_MAX_PATH_LENGTH: int = _parse_int.__func__("DEFAULT_MAX_PATH_LENGTH", "4096")
    # Target of a bare `cd` and of `~` in cd targets; empty refuses both
    MEDIATION_HOME: str = os.getenv("MEDIATION_HOME", os.path.expanduser("~"))

    # ========================================================================
    # Logging
    # ========================================================================
    MEDIATION_LOG_LEVEL: str = os.getenv("MEDIATION_LOG_LEVEL", "INFO")
    MEDIATION_LOG_FILE: str = os.getenv("MEDIATION_LOG_FILE", "")

    # ========================================================================
    # Audit trail
    # ========================================================================
    ENABLE_AUDIT: bool = os.getenv("ENABLE_AUDIT", "false").lower() in {"1", "true", "yes"}
    AUDIT_LOG_PATH: str = os.getenv("AUDIT_LOG_PATH", "./audit.jsonl")
    AUDIT_RETENTION_DAYS: int = _parse_int.__func__("AUDIT_RETENTION_DAYS", "30")
    AUDIT_ROTATION_BYTES: int = _parse_int.__func__(
        "AUDIT_ROTATION_BYTES", str(10 * 1024 * 1024)
    )

    # ========================================================================
    # Approval
    # ========================================================================
    APPROVAL_PRESENTER: str = os.getenv("APPROVAL_PRESENTER", "auto")
    # Presenter-side timeout hint in seconds; 0 disables it
    APPROVAL_TIMEOUT: int = _parse_int.__func__("APPROVAL_TIMEOUT", "300")

    # ========================================================================
    # Command execution
    # ========================================================================
    COMMAND_TIMEOUT: int = _parse_int.__func__("COMMAND_TIMEOUT", "120")

    @classmethod
    def validate(cls) -> bool:
        """
        Validate configuration consistency.

        Returns:
            True if validation passes

        Raises:
            ValueError: If validation fails
        """
        errors = []

        if cls.DEFAULT_MAX_FILE_SIZE <= 0:
            errors.append(f"DEFAULT_MAX_FILE_SIZE must be > 0, got {cls.DEFAULT_MAX_FILE_SIZE}")
        if cls.DEFAULT_MAX_PATH_LENGTH <= 0:
            errors.append(
                f"DEFAULT_MAX_PATH_LENGTH must be > 0, got {cls.DEFAULT_MAX_PATH_LENGTH}"
            )
        if cls.APPROVAL_TIMEOUT < 0:
            errors.append(f"APPROVAL_TIMEOUT must be >= 0, got {cls.APPROVAL_TIMEOUT}")
        if cls.COMMAND_TIMEOUT <= 0:
            errors.append(f"COMMAND_TIMEOUT must be > 0, got {cls.COMMAND_TIMEOUT}")
        if cls.AUDIT_ROTATION_BYTES <= 0:
            errors.append(f"AUDIT_ROTATION_BYTES must be > 0, got {cls.AUDIT_ROTATION_BYTES}")
        if cls.MEDIATION_LOG_LEVEL.upper() not in {
            "TRACE",
            "DEBUG",
            "INFO",
            "SUCCESS",
            "WARNING",
            "ERROR",
            "CRITICAL",
        }:
            errors.append(f"MEDIATION_LOG_LEVEL is not a log level: {cls.MEDIATION_LOG_LEVEL}")
        if cls.APPROVAL_PRESENTER not in {"auto", "fastmcp_elicit", "systemd_fallback"}:
            errors.append(f"APPROVAL_PRESENTER is unknown: {cls.APPROVAL_PRESENTER}")

        if errors:
            raise ValueError(f"Config validation failed: {'; '.join(errors)}")

        return True
