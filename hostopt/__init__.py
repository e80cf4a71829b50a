"""
Host optimizer package bootstrap.

Importing any module under ``hostopt`` loads environment variables from the
closest ``.env`` so the CLI, the guardian timer and the supervisor threads all
see the same ``HOSTOPT_*`` overrides regardless of which entrypoint started
them.
"""

from .env_loader import EnvLoader

# Load exactly once per interpreter import. Safe to call repeatedly.
EnvLoader.load()

__all__ = ["EnvLoader"]
