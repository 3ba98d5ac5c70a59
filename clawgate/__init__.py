"""
clawgate - messaging gateway for AI agents
"""

__version__ = "0.1.0"
__logo__ = "🦀"
