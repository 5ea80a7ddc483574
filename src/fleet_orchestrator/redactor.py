"""Logging filter that keeps secrets and key material out of log output.

Two kinds of content are scrubbed:

* values of configuration keys matching ``logging.redact_patterns``
  (shell-style globs applied to config *keys*), plus any value registered
  at runtime with :meth:`SecretRedactingFilter.add_secret`, which onboarding
  does for every private key it generates;
* any PEM private-key block, whatever produced it.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from typing import Any, Iterable

REDACTED = "[REDACTED]"
REDACTED_KEY = "[REDACTED PRIVATE KEY]"

_PEM_PRIVATE_KEY_RE = re.compile(
    r"-----BEGIN ([A-Z ]*)PRIVATE KEY-----.*?-----END \1PRIVATE KEY-----",
    re.DOTALL,
)


class SecretRedactingFilter(logging.Filter):
    """A :class:`logging.Filter` that scrubs secret values from log output."""

    def __init__(self, secret_values: Iterable[str] | None = None) -> None:
        super().__init__()
        # Single characters would shred every message.
        self._secrets: list[str] = [
            s for s in (secret_values or []) if s and len(s) > 1
        ]

    def add_secret(self, value: str) -> None:
        """Register an additional secret value at runtime."""
        if value and len(value) > 1 and value not in self._secrets:
            self._secrets.append(value)

    def filter(self, record: logging.LogRecord) -> bool:
        """Redact secrets in the log record's message and args."""
        record.msg = self.redact(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self.redact(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self.redact(a) for a in record.args)
        return True

    def redact(self, value: Any) -> Any:
        """Return *value* with key blocks and known secrets replaced."""
        if not isinstance(value, str):
            return value
        value = _PEM_PRIVATE_KEY_RE.sub(REDACTED_KEY, value)
        for secret in self._secrets:
            if secret in value:
                value = value.replace(secret, REDACTED)
        return value


def collect_secret_values(
    config_dict: dict[str, Any],
    patterns: list[str] | None = None,
) -> list[str]:
    """Walk a config dict and collect values whose *keys* match *patterns*.

    Parameters
    ----------
    config_dict:
        Flat or nested configuration dictionary.
    patterns:
        Shell-glob patterns matched against dictionary keys (e.g.
        ``["*key*", "*token*"]``).  Matching is case-insensitive.

    Returns
    -------
    list[str]
        The string values associated with matching keys.
    """
    if not patterns:
        return []

    results: list[str] = []
    _walk(config_dict, [p.lower() for p in patterns], results)
    return results


def _walk(obj: Any, patterns: list[str], out: list[str]) -> None:
    if isinstance(obj, dict):
        for key, val in obj.items():
            if isinstance(val, str) and any(fnmatch.fnmatch(key.lower(), p) for p in patterns):
                out.append(val)
            _walk(val, patterns, out)
    elif isinstance(obj, (list, tuple)):
        for item in obj:
            _walk(item, patterns, out)
