"""
External process runs with live, ordered output streaming.
"""
