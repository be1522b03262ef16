"""
Flask application and background workers.
"""
