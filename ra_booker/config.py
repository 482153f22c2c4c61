"""Configuration constants for the Reserve America cart poller"""

from pathlib import Path

# API Configuration
ADD_ITEM_ENDPOINT = "https://api.reserveamerica.com/jaxrs-json/shoppingcart/0/additem"
CART_ENDPOINT = "https://api.reserveamerica.com/jaxrs-json/shoppingcart/0"
BASE_URL = "https://www.reserveamerica.com"
DEFAULT_COOKIE_FILE = Path("./cookies/ra_cookies.json")
DEFAULT_OUTPUT_DIR = Path("./output")

# curl_cffi TLS fingerprint. Its default browser headers are switched off
# in the client, so the dicts below are all that is sent.
IMPERSONATE = "chrome"

# The add-item endpoint rejects requests whose headers drift from a real
# browser. Order and values must stay exactly as captured.
ADD_ITEM_HEADERS = {
    "a1data": "",
    "accept": "application/json",
    "accept-language": "en-US,en;q=0.9",
    "authorization": "",
    "cache-control": "no-cache",
    "content-type": "application/json",
    "origin": "https://www.reserveamerica.com",
    "pragma": "no-cache",
    "priority": "u=1, i",
    "referer": "https://www.reserveamerica.com/",
    "sec-ch-ua": '"Google Chrome";v="141", "Not?A_Brand";v="8", "Chromium";v="141"',
    "sec-ch-ua-mobile": "?0",
    "sec-ch-ua-platform": '"macOS"',
    "sec-fetch-dest": "empty",
    "sec-fetch-mode": "cors",
    "sec-fetch-site": "same-site",
    "user-agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/141.0.0.0 Safari/537.36"
    ),
}

CART_HEADERS = {
    "authorization": "",
    "a1data": "",
    "accept": "application/json",
    "accept-language": "en-US,en;q=0.9",
    "content-type": "application/json",
    "origin": "https://www.reserveamerica.com",
    "referer": "https://www.reserveamerica.com/",
    "user-agent": (
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/118.0.0.0 Safari/537.36"
    ),
}

# Cookie names holding the session material
ID_TOKEN_COOKIE = "idToken"
A1_DATA_COOKIE = "a1Data"

# Polling defaults
DEFAULT_CADENCE = 0.010  # 10ms between ticks
DEFAULT_MAX_CONCURRENT = 100  # cap on in-flight requests
DEFAULT_MAX_DURATION = 300.0  # 5 minutes
DEFAULT_REQUEST_TIMEOUT = 10.0  # Seconds per attempt

# Throttle handling (HTTP 429 and HTTP 000)
THROTTLE_PAUSE_MIN = 1.0  # Seconds
THROTTLE_PAUSE_MAX = 2.0  # Seconds
THROTTLE_THRESHOLD = 10  # Consecutive throttles before concurrency drops by one

# Warn the operator after this many consecutive non-throttle failures
FAILURE_WARNING_THRESHOLD = 20

# Activity log buffer size
LOG_LIMIT = 1000

# Booking rules
DEFAULT_CONTRACT_CODE = "NY"
DEFAULT_QUANTITY = 1
MIN_NIGHTS = 1
MAX_NIGHTS = 14
BOOKING_WINDOW_MONTHS = 9  # Sites unlock 9 months before arrival
UNLOCK_HOUR = 9  # 09:00 local on the unlock day
