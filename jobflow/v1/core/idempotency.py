"""
Idempotency key derivation for job invocations.
"""

import hashlib
from collections.abc import Mapping
from typing import Any

from jobflow.config.settings import KeyGranularity
from jobflow.v1.core.serializer import canonical_json

# Explicit identifiers, highest priority first
IDENTIFIER_FIELDS = ("job_id", "jid")

# Where the job name may be found on a mapping source
JOB_NAME_FIELDS = ("job_name", "job_class", "worker")


class IdempotencyKeyDeriver:
    """
    Compute the deduplication key for one job invocation.

    An explicit identifier (``job_id``, then ``jid``) is used verbatim.
    Otherwise the key is a SHA-256 digest of the canonical JSON form of the
    job name, plus the positional and keyword arguments when the granularity
    is ``job_args``.
    """

    def __init__(self, granularity: KeyGranularity = KeyGranularity.JOB_ARGS):
        self.granularity = KeyGranularity(granularity)

    def value_for(self, source: Mapping[str, Any] | Any) -> str:
        identifier = self._explicit_identifier(source)
        if identifier is not None:
            return str(identifier)

        job_name = self._job_name(source)
        if self.granularity is KeyGranularity.JOB_ARGS:
            material: list[Any] = [
                job_name,
                list(self._field(source, "args") or []),
                dict(self._field(source, "kwargs") or {}),
            ]
        else:
            material = [job_name]
        return self.digest(material)

    @staticmethod
    def digest(material: Any) -> str:
        return hashlib.sha256(canonical_json(material).encode()).hexdigest()

    @staticmethod
    def _field(source: Mapping[str, Any] | Any, name: str) -> Any:
        if isinstance(source, Mapping):
            return source.get(name)
        return getattr(source, name, None)

    def _explicit_identifier(self, source: Mapping[str, Any] | Any) -> Any:
        for name in IDENTIFIER_FIELDS:
            value = self._field(source, name)
            if value:
                return value
        return None

    def _job_name(self, source: Mapping[str, Any] | Any) -> str | None:
        if isinstance(source, Mapping):
            for name in JOB_NAME_FIELDS:
                if source.get(name):
                    return str(source[name])
            return None
        job_name = getattr(source, "job_name", None)
        if job_name:
            return str(job_name)
        return type(source).__name__
