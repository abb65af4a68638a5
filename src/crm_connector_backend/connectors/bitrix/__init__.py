from .connector import BitrixConnector
from .install import InstallHandler
from .invoker import ResilientInvoker
from .token_authority import TokenAuthority

__all__ = ["BitrixConnector", "InstallHandler", "ResilientInvoker", "TokenAuthority"]
