# =============================================================================
# Realtime Transport -- Package Logger
# =============================================================================

import logging

logger = logging.getLogger("realtime_transport")
logger.addHandler(logging.NullHandler())
