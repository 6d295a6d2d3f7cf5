"""
Ecotrack - Authentication Backend

Registration, login, rotating refresh tokens, email verification,
password reset and biometric sign-in for the Ecotrack mobile app.
"""

__version__ = "0.1.0"
