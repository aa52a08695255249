"""Terminal color codes for log differentiation.

Usage:
    from loftguard.shared.log_colors import LogColors

    logger.warning(f"{LogColors.CLIENT_LABEL} rate_limit_exceeded", identifier=ip)
    logger.error(f"{LogColors.PLATFORM_LABEL} security_pipeline_error", request_id=rid)
"""


class LogColors:
    """ANSI terminal colors for differentiating log sources."""

    RESET = "\033[0m"

    # Client-side abuse or misuse (yellow - external, expected in normal operation)
    CLIENT = "\033[93m"
    CLIENT_LABEL = f"{CLIENT}[CLIENT]{RESET}"

    # Platform-side faults (red - internal, needs attention)
    PLATFORM = "\033[91m"
    PLATFORM_LABEL = f"{PLATFORM}[PLATFORM]{RESET}"

    # Backing store problems (cyan - degraded, failing open)
    STORE = "\033[96m"
    STORE_LABEL = f"{STORE}[STORE]{RESET}"


def short_id(identifier: str | None, length: int = 16) -> str | None:
    """Truncate long identifiers (tokens, composite keys) for log lines."""
    if identifier is None:
        return None
    return identifier[:length] + "..." if len(identifier) > length else identifier
