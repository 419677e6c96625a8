"""
Configuration for hanziflow.
"""

from .hanziflow_config import HanziflowConfig
from .logging_setup import setup_logging

__all__ = ['HanziflowConfig', 'setup_logging']
