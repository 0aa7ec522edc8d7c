"""RTT-based nearest site resolver package."""

from .api import RTTResolverAPI, ResolverConfig, build_api
from .service_http import create_app

__all__ = ["RTTResolverAPI", "ResolverConfig", "build_api", "create_app"]

__version__ = "0.1.0"
