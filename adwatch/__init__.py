from logging import getLogger
from logging.config import dictConfig
from .config import LOGGER_CONFIG_JSON

dictConfig(LOGGER_CONFIG_JSON)

# Apply log sanitization to prevent credential and payout-detail leakage
from adwatch.modules.log_sanitizer import apply_sensitive_data_filter
apply_sensitive_data_filter()

version = 1.0
logger = getLogger('adwatch')
