"""Utility modules for Ops Monitor."""
from utils.logger import setup_logging
from utils.formatters import parse_duration, format_duration, format_pct, format_timestamp, time_ago
from utils.rate_limiter import FixedWindowLimiter
from utils.http_client import HTTPClient, APIError
from utils.events import EventBus
