# =============================================================================
# Realtime Transport -- Constants
# =============================================================================
#
# Defaults shared by the socket, push-stream and polling adapters and the
# two orchestrators.  Durations are seconds, latencies are milliseconds.
# =============================================================================

# -- Reconnection --------------------------------------------------------------

RECONNECT_INITIAL_DELAY = 0.5
RECONNECT_MAX_DELAY = 30.0
RECONNECT_JITTER_FACTOR = 0.3
RECONNECT_MAX_ATTEMPTS = -1  # -1 = infinite

# -- Heartbeat / latency -------------------------------------------------------

HEARTBEAT_INTERVAL = 30.0
HEARTBEAT_TIMEOUT = 60.0
LATENCY_SAMPLING_INTERVAL = 10.0
LATENCY_WINDOW_SIZE = 10

# -- Polling -------------------------------------------------------------------

POLLING_INTERVAL = 5.0
POLLING_JITTER_FACTOR = 0.1
POLLING_MAX_CONSECUTIVE_ERRORS = 3
REQUEST_TIMEOUT = 30.0

# -- Socket --------------------------------------------------------------------

CONNECTION_TIMEOUT = 10.0
MAX_MESSAGE_SIZE = 1_048_576  # 1 MB

# -- Orchestration -------------------------------------------------------------

MAX_FAILURES_BEFORE_SWITCH = 3
UPGRADE_ATTEMPT_INTERVAL = 300.0  # 5 minutes
UPGRADE_GRACE_PERIOD = 5.0

# -- Socket pool ---------------------------------------------------------------

POOL_MAX_CONNECTIONS = 5
POOL_CONNECTION_TIMEOUT = 30.0
POOL_HEARTBEAT_INTERVAL = 30.0
POOL_MAX_RECONNECT_ATTEMPTS = 3
POOL_RECONNECT_DELAY = 1.0
POOL_IDLE_TIMEOUT = 300.0
POOL_CLEANUP_INTERVAL = 60.0

# -- Resumption cursor keys ----------------------------------------------------

SOCKET_CURSOR_KEY = "ws_last_event_id"
PUSH_STREAM_CURSOR_KEY = "sse_last_event_id"
POLLING_CURSOR_KEY = "polling_last_event_id"

# -- Wire ----------------------------------------------------------------------

MSG_PING = "ping"
MSG_PONG = "pong"
DEFAULT_MESSAGE_TYPE = "message"

PATH_POLL = "poll"
PATH_SEND = "send"
PATH_PING = "ping"

STREAM_PREFIX_DATA = "data: "
STREAM_PREFIX_EVENT = "event: "
STREAM_PREFIX_ID = "id: "
STREAM_PREFIX_RETRY = "retry: "

# -- Error classification ------------------------------------------------------

# HTTP statuses meaning "this endpoint cannot serve this transport"
FATAL_HTTP_STATUSES = frozenset({404, 405, 501})

# -- Quality thresholds --------------------------------------------------------

QUALITY_EXCELLENT_LATENCY = 50.0   # ms
QUALITY_EXCELLENT_JITTER = 25.0
QUALITY_GOOD_LATENCY = 150.0
QUALITY_GOOD_JITTER = 50.0
QUALITY_FAIR_LATENCY = 300.0
QUALITY_FAIR_JITTER = 100.0
