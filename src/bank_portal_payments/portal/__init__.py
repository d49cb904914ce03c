"""
Browser-side automation for the bank portal: session, element location, form filling,
navigation, OTP handshake and confirmation detection.

Kept import-free: `models` depends on `portal.errors`, and the engine depends on `models`.
"""
