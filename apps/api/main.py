"""Thin API launcher.

This is the uvicorn entrypoint. All application logic lives in the tabsync package.
Run with: uvicorn main:app --reload

Note: The app instance is created here (not in tabsync.app) so that importing
create_app has no side effects and tests can build apps with their own
StorageManager.
"""

from tabsync.app import create_app

app = create_app()

__all__ = ["app"]
