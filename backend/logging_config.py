"""
chatrelay Logging Configuration - Color-Coded Console Logs

Provides:
- ColorFormatter: ANSI color-coded log output, tagged by chat component
- Helper functions: log_message_in, log_message_out, log_tool, log_llm, log_stream
- setup_logging(): Configure application logging from LOG_LEVEL / LOG_COLOR

Usage:
    from logging_config import setup_logging, log_message_in, log_tool
    setup_logging()
    logger = logging.getLogger(__name__)
    log_message_in(logger, "User question", conversation="c1")
"""

import logging
import sys
from typing import Optional

# ANSI color codes
COLORS = {
    "RESET": "\033[0m",
    "BOLD": "\033[1m",
    "DIM": "\033[2m",
    "MSG_IN": "\033[96m",  # incoming message
    "MSG_OUT": "\033[92m",  # finished turn
    "STREAM": "\033[95m",  # interceptor state changes
    "TOOL": "\033[93m",  # web_search calls
    "LLM": "\033[94m",  # provider calls
    "ERROR": "\033[91m",
    "WARN": "\033[33m",
    "DEBUG": "\033[90m",
}

# Logger name prefix -> short component tag shown in each line
COMPONENT_TAGS = {
    "routers.chat_orchestration": "core",
    "routers.chat_streaming": "sse",
    "routers.chat": "ws",
    "routers": "api",
    "services.provider_client": "llm",
    "services.search_client": "search",
    "services.token_cache": "auth",
    "services": "svc",
    "client": "client",
}


def component_tag(name: str) -> str:
    """Short tag for a logger name; longest matching prefix wins."""
    for prefix in sorted(COMPONENT_TAGS, key=len, reverse=True):
        if name == prefix or name.startswith(prefix + "."):
            return COMPONENT_TAGS[prefix]
    return name.rsplit(".", 1)[-1]


class ColorFormatter(logging.Formatter):
    """timestamp [LEVEL] tag: message, colored by level unless disabled."""

    LEVEL_COLORS = {
        logging.DEBUG: COLORS["DEBUG"],
        logging.INFO: COLORS["RESET"],
        logging.WARNING: COLORS["WARN"],
        logging.ERROR: COLORS["ERROR"],
        logging.CRITICAL: COLORS["ERROR"] + COLORS["BOLD"],
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def _paint(self, text: str, color: str) -> str:
        return f"{color}{text}{COLORS['RESET']}" if self.use_color else text

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self._paint(self.formatTime(record, "%H:%M:%S"), COLORS["DIM"])
        level = self._paint(record.levelname[:4], self.LEVEL_COLORS.get(record.levelno, COLORS["RESET"]))
        message = record.getMessage()
        if not self.use_color:
            for code in COLORS.values():
                message = message.replace(code, "")

        formatted = f"{timestamp} [{level}] {component_tag(record.name)}: {message}"
        if record.exc_info:
            formatted += "\n" + self.formatException(record.exc_info)
        return formatted


def setup_logging(level: Optional[str] = None, use_color: Optional[bool] = None) -> None:
    """Configure console logging; defaults come from runtime_config."""
    from config import runtime_config

    level = (level or runtime_config.log_level).upper()
    if use_color is None:
        use_color = runtime_config.log_color and sys.stdout.isatty()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColorFormatter(use_color=use_color))

    root = logging.getLogger()
    root.setLevel(getattr(logging, level, logging.INFO))
    root.handlers = [handler]

    for noisy in ("httpx", "httpcore", "uvicorn.access", "websockets", "asyncpg"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# =============================================================================
# COLORED LOG HELPER FUNCTIONS
# =============================================================================


def log_message_in(logger: logging.Logger, message: str, **context) -> None:
    """Log incoming user message.

    Args:
        logger: Logger instance
        message: User message text
        **context: Additional context (conversation, attachments, channel, etc.)
    """
    preview = message[:80] + "..." if len(message) > 80 else message
    ctx = " ".join(f"{k}={v}" for k, v in context.items())
    logger.info(f"{COLORS['MSG_IN']}>>> MESSAGE{COLORS['RESET']} {preview} [{ctx}]")


def log_message_out(
    logger: logging.Logger,
    tools_used: list = None,
    chars: int = 0,
) -> None:
    """Log a finished turn.

    Args:
        logger: Logger instance
        tools_used: List of tool names used
        chars: Length of the accumulated reply
    """
    tools = ", ".join(tools_used) if tools_used else "none"
    logger.info(f"{COLORS['MSG_OUT']}<<< RESPONSE{COLORS['RESET']} " f"tools=[{tools}] chars={chars}")


def log_stream(logger: logging.Logger, state: str, **context) -> None:
    """Log a stream state transition."""
    ctx = " ".join(f"{k}={v}" for k, v in context.items()) if context else ""
    logger.debug(f"{COLORS['STREAM']}~~ STREAM{COLORS['RESET']} {state} {ctx}".rstrip())


def log_tool(
    logger: logging.Logger,
    tool_name: str,
    state: str,
    **context,
) -> None:
    """Log tool execution.

    Args:
        logger: Logger instance
        tool_name: Name of the tool
        state: 'start' or 'end'
        **context: Additional context (query, chars, etc.)
    """
    ctx = " ".join(f"{k}={v}" for k, v in context.items()) if context else ""
    if state == "start":
        logger.info(f"{COLORS['TOOL']}>>> TOOL{COLORS['RESET']} {tool_name} {ctx}")
    else:
        logger.info(f"{COLORS['TOOL']}<<< TOOL{COLORS['RESET']} {tool_name} {ctx}")


def log_llm(
    logger: logging.Logger,
    state: str,
    model: str = "",
    duration: float = 0,
) -> None:
    """Log provider call.

    Args:
        logger: Logger instance
        state: 'start' or 'end'
        model: Deployment or model label
        duration: Call duration in seconds (for end state)
    """
    if state == "start":
        logger.info(f"{COLORS['LLM']}>>> LLM{COLORS['RESET']} calling {model}")
    else:
        logger.info(f"{COLORS['LLM']}<<< LLM{COLORS['RESET']} " f"{model} completed in {duration:.1f}s")
