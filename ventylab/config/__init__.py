from ventylab.config.logging import setup_logging
from ventylab.config.settings import Settings, get_settings


__all__ = ["Settings", "get_settings", "setup_logging"]
