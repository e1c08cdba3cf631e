"""Typed configuration for browse operations and the dnssd-browse CLI.

Brief:
  BrowseConfig is a Pydantic model; load_config() reads it from a YAML file.

Example YAML:
  service_types:
    - _http._tcp.local.
    - _ipp._tcp
  interfaces: [eth0]
  ip_version: v4
  timeout: 10
  logging:
    level: debug
    stderr: true
"""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


class BrowseConfig(BaseModel):
    """Brief: Settings shared by lookup_types() and the command line tool.

    Inputs:
      - service_types: Service types to browse; a trailing dot is added.
      - interfaces: Interface names to browse on (empty: all usable ones).
      - ip_version: "v4", "v6" or "all" (aliases such as "ipv4" accepted).
      - timeout: Seconds the CLI browses before exiting; 0 runs until
        interrupted. Library calls ignore it and use their Context.
      - max_services: Upper bound on cached service instances.
      - max_addresses: Upper bound on cached host addresses.
      - join_timeout: Seconds to wait for helper threads on shutdown.
      - logging: Mapping passed to init_logging().

    Outputs:
      - BrowseConfig instance.
    """

    model_config = ConfigDict(extra="forbid")

    service_types: List[str] = Field(default_factory=list)
    interfaces: List[str] = Field(default_factory=list)
    ip_version: str = Field(default="all")
    timeout: float = Field(default=0.0, ge=0)
    max_services: int = Field(default=4096, gt=0)
    max_addresses: int = Field(default=4096, gt=0)
    join_timeout: float = Field(default=1.0, ge=0)
    logging: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("service_types", mode="before")
    @classmethod
    def _normalize_service_types(cls, v):  # type: ignore[no-untyped-def]
        """Brief: Accept a single string, drop blanks, add trailing dots.

        Example:
          - ``"_http._tcp.local"`` -> ``["_http._tcp.local."]``
        """

        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        out: List[str] = []
        for item in v:
            s = str(item or "").strip()
            if not s:
                continue
            if not s.endswith("."):
                s += "."
            if s not in out:
                out.append(s)
        return out

    @field_validator("interfaces", mode="before")
    @classmethod
    def _normalize_interfaces(cls, v):  # type: ignore[no-untyped-def]
        if v is None:
            return []
        if isinstance(v, str):
            v = [v]
        return [str(i).strip() for i in v if str(i or "").strip()]

    @field_validator("ip_version", mode="before")
    @classmethod
    def _normalize_ip_version(cls, v):  # type: ignore[no-untyped-def]
        """Brief: Map aliases onto "v4" | "v6" | "all"; reject anything else."""

        s = str(v or "all").strip().lower()
        if s in {"v4", "v4only", "ipv4", "4"}:
            return "v4"
        if s in {"v6", "v6only", "ipv6", "6"}:
            return "v6"
        if s in {"all", "both", "any"}:
            return "all"
        raise ValueError(f"unsupported ip_version {v!r}")


def load_config(path: Optional[str]) -> BrowseConfig:
    """Brief: Read a BrowseConfig from a YAML file.

    Inputs:
      - path: File path; None returns the defaults.

    Outputs:
      - BrowseConfig.

    Raises:
      - OSError when the file cannot be read.
      - ValueError when the YAML is invalid or does not validate (pydantic's
        ValidationError is a ValueError).
    """

    if not path:
        return BrowseConfig()

    with open(os.path.expanduser(path), "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ValueError(f"invalid YAML in {path}: {exc}") from exc

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    return BrowseConfig(**data)
