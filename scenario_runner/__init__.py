"""
Scenario Runner - browser session lifecycle and remote test-run orchestration.
"""
__version__ = "0.1.0"
