"""
Core package for configuration, logging, security and result types.
"""
