# medgraph/core/limiter.py
from slowapi import Limiter
from slowapi.util import get_remote_address
from medgraph.core.config import settings

def get_client_key(request) -> str:
    """
    Keys limits by remote address, scoped to the patient PID when the route carries one.
    """
    pid = request.path_params.get("pid")
    address = get_remote_address(request)
    return f"{address}:{pid}" if pid else address

limiter = Limiter(
    key_func=get_client_key,
    storage_uri=settings.LIMITER_STORAGE_URI or settings.REDIS_URL,
    strategy="fixed-window"
)
