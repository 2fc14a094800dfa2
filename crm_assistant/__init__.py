"""
CRM assistant - conversational layer over owner-scoped CRM records.
"""

from .core.config import VERSION

__version__ = VERSION
