"""Rate limiting shared by every router (slowapi, keyed by client address)."""

from slowapi import Limiter
from slowapi.util import get_remote_address

DEFAULT_LIMIT = "100/minute"
# Drivers post a fix every few seconds; give the relay endpoint more headroom.
LOCATION_LIMIT = "600/minute"

limiter = Limiter(key_func=get_remote_address)
