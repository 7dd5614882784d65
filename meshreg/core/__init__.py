"""
meshreg core module.

Registry model records, the downstream push interface, in-process metrics,
logging configuration and background task ownership.
"""
