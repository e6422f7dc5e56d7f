"""
twostep - password + TOTP two-step authentication core.
"""

__version__ = "1.0.0"
