"""Core types, configuration, and exceptions."""

from progress_cascade.core.config import ProgressConfig
from progress_cascade.core.exceptions import *  # noqa: F403
from progress_cascade.core.exceptions import __all__ as exceptions__all__
from progress_cascade.core.types import *  # noqa: F403
from progress_cascade.core.types import __all__ as types__all__

__all__ = ["ProgressConfig"]

__all__ += exceptions__all__
__all__ += types__all__
