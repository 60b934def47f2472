"""
Registry data model and the Prometheus file_sd rendering of it.

A ServiceEntry is stored as JSON under its key; the discovery side turns the
whole registry into a list of target groups:

    [{"targets": ["10.0.0.1:9100/metrics"], "labels": {"job": "svc-a"}}]

The metrics path is part of the target address because file_sd has no
per-target path field. Prometheus is expected to split it back off with a
relabel rule on the first "/".
"""
import re
from typing import Dict, Iterable, List, Optional, Any

import orjson
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from prometheus_sd.exceptions import ValidationError

DEFAULT_METRICS_PATH = "/metrics"

# Labels Prometheus-sd manages itself
RESERVED_LABELS = frozenset({"job", "__address__", "__metrics_path__"})

LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


class ServiceEntry(BaseModel):
    """One registered service instance"""

    model_config = ConfigDict(str_strip_whitespace=True)

    key: str = Field(min_length=1)
    job_name: Optional[str] = None
    host: str = Field(min_length=1)
    port: int = Field(ge=1, le=65535)
    metrics_path: str = DEFAULT_METRICS_PATH
    labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator('metrics_path')
    @classmethod
    def normalize_metrics_path(cls, v):
        if not v:
            return DEFAULT_METRICS_PATH
        if not v.startswith("/"):
            return "/" + v
        return v

    @field_validator('labels')
    @classmethod
    def validate_labels(cls, v):
        reserved = sorted(RESERVED_LABELS.intersection(v))
        if reserved:
            raise ValueError(f"reserved label name(s): {', '.join(reserved)}")
        invalid = sorted(name for name in v if not LABEL_NAME_RE.match(name))
        if invalid:
            raise ValueError(f"invalid label name(s): {', '.join(invalid)}")
        return v

    @model_validator(mode='after')
    def default_job_name(self):
        if not self.job_name:
            self.job_name = self.key
        return self

    @classmethod
    def create(
        cls,
        key: str,
        host: str,
        port: Any,
        job_name: Optional[str] = None,
        metrics_path: Optional[str] = None,
        labels: Optional[Dict[str, str]] = None,
    ) -> "ServiceEntry":
        """
        Build an entry from caller-supplied fields.

        Raises:
            ValidationError: out-of-range port, empty key/host, reserved or
                malformed label names
        """
        data = {"key": key, "host": host, "port": port, "job_name": job_name}
        if metrics_path is not None:
            data["metrics_path"] = metrics_path
        if labels:
            data["labels"] = dict(labels)
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            raise _to_validation_error(e) from e

    @property
    def target(self) -> str:
        return f"{self.host}:{self.port}{self.metrics_path}"

    def to_json(self) -> str:
        """Serialized form stored in the registry"""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw) -> "ServiceEntry":
        try:
            return cls.model_validate_json(raw)
        except PydanticValidationError as e:
            raise _to_validation_error(e) from e

    def to_target_group(self) -> Dict[str, Any]:
        labels = {"job": self.job_name}
        for name in sorted(self.labels):
            labels[name] = self.labels[name]
        return {"targets": [self.target], "labels": labels}


def _to_validation_error(exc: PydanticValidationError) -> ValidationError:
    error = exc.errors()[0]
    field = ".".join(str(part) for part in error["loc"]) or None
    message = error["msg"]
    if field:
        message = f"Invalid {field}: {message}"
    return ValidationError(message, field=field)


def render_target_groups(entries: Iterable[ServiceEntry]) -> bytes:
    """
    Canonical file_sd document for a registry snapshot.

    Entries are ordered by key and labels by name (job first), so equal
    registries always produce identical bytes.
    """
    groups: List[Dict[str, Any]] = [
        entry.to_target_group()
        for entry in sorted(entries, key=lambda e: e.key)
    ]
    return orjson.dumps(groups, option=orjson.OPT_INDENT_2 | orjson.OPT_APPEND_NEWLINE)
