from loguru import logger

# Disable logging by default for library usage.
# Application entry points (e.g., hookpolicy.cli) should call logger.enable("hookpolicy")
# to enable logging.
logger.disable("hookpolicy")
