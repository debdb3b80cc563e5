"""usercache."""

from .monitoring.logger import configure_logger

# Configure logger with default settings (console logging)
configure_logger()
