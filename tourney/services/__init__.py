"""
Services package for the tournament engine.
"""

from .base import BaseService
from .locks import KeyedLockRegistry

__all__ = ['BaseService', 'KeyedLockRegistry']
