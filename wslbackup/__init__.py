"""
WSL Backup - snapshot, restore and migration of WSL distributions.
"""

__version__ = "1.0.0"
