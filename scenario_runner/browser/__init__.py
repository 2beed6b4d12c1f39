"""
Browser sessions for end-to-end scenarios.

Provides Playwright-based session handling with:
- One isolated engine/context/page per scenario
- On-demand engine installation, serialized per engine kind
- Guaranteed teardown and best-effort failure screenshots
"""
