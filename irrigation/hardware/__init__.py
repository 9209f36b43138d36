"""
Hardware abstraction layer.
"""

from .controller import BaseValveDriver, MockValveDriver, create_driver

__all__ = ["BaseValveDriver", "MockValveDriver", "create_driver"]
