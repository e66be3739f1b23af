"""
Coquette - agent orchestration engine for a mobile AI assistant.
"""

__version__ = "0.1.0"
