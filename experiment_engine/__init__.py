"""
A/B Test Experimentation Engine
"""

import logging

logger = logging.getLogger(__name__)

# App version
__version__ = "1.0.0"
