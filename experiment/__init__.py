"""
HTTP boundary for the chromatrial experiment server.
"""
