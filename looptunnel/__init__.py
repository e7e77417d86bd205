from .tunnel import Endpoint, TunnelServer, open_tunnel

__version__ = "0.1.0"

__all__ = ["Endpoint", "TunnelServer", "open_tunnel", "__version__"]
