from .client import AcmeClient
from .version import __version__
from .plugin_base import PluginRegistry

__all__ = ["AcmeClient", "PluginRegistry", "__version__"]
