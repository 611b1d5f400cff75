from .core import CoreSettings
from .policy import PolicySettings
from .runtime import RuntimeSettings
from .view import SettingsView

__all__ = ["CoreSettings", "PolicySettings", "RuntimeSettings", "SettingsView"]
