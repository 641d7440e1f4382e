from .enrichment import HttpEnricher
from .oauth import OAuthTokenRefresher
from .sink import WebhookSink, build_sink_payload
from .sources import HttpSourcePoller

__all__ = [
    "HttpEnricher",
    "HttpSourcePoller",
    "OAuthTokenRefresher",
    "WebhookSink",
    "build_sink_payload",
]
