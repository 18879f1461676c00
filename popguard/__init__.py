"""popguard — adaptive popup classification and decision coordination."""

from popguard.engine import PopupEngine
from popguard.models.config import EngineConfig

__version__ = "0.1.0"

__all__ = ["EngineConfig", "PopupEngine", "__version__"]
