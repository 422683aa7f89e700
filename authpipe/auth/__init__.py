"""
Authentication package for the authpipe client.

This package contains secure credential storage and the single-flight
token refresh coordinator.
"""
