"""
Shared models, interfaces, exceptions and logging configuration for authpipe.
"""
