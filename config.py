import os
from typing import Mapping, Optional

from pydantic import BaseModel, field_validator

import constants
import custom_exceptions
import utils


class Configuration(BaseModel):
    """Connection settings for a client-mode Tamer context."""

    protocol: str = constants.PUSH
    servers: list[str] = [f"{constants.localhost}:{constants.dport}"]
    username: Optional[str] = None
    password: Optional[str] = None

    @field_validator("protocol")
    @classmethod
    def check_protocol(cls, protocol: str) -> str:
        protocol = protocol.lower()
        if protocol not in (constants.PUSH, constants.PULL):
            raise ValueError(f"Invalid protocol type: {protocol}")

        return protocol

    @field_validator("servers", mode="before")
    @classmethod
    def split_servers(cls, servers):
        if isinstance(servers, str):
            servers = [s.strip() for s in servers.split(",") if s.strip()]

        return servers

    @field_validator("servers")
    @classmethod
    def check_servers(cls, servers: list[str]) -> list[str]:
        try:
            utils.parse_servers(servers)

        except custom_exceptions.InvalidArguments as exp:
            raise ValueError(str(exp))

        return servers


class WorkerVariables(BaseModel):
    """Settings a supervisor passes down to a worker process."""

    enabled: bool = False
    protocol: Optional[str] = None
    servers: list[str] = []
    username: Optional[str] = None
    password: Optional[str] = None
    instance_id: Optional[str] = None

    @classmethod
    def from_environment(cls, environ: Optional[Mapping[str, str]] = None) -> "WorkerVariables":
        """Read the TAMER_* variables.

        Raises:
            UnsupervisedWorker: if TAMER_ENABLED is not set to the truthy marker
        """
        if environ is None:
            environ = os.environ

        if environ.get(constants.TAMER_ENABLED) != constants.TRUE_MARKER:
            raise custom_exceptions.UnsupervisedWorker()

        servers = environ.get(constants.TAMER_SERVERS) or ""

        return cls(
            enabled=True,
            protocol=environ.get(constants.TAMER_PROTOCOL),
            servers=[s.strip() for s in servers.split(",") if s.strip()],
            username=environ.get(constants.TAMER_USERNAME) or None,
            password=environ.get(constants.TAMER_PASSWORD) or None,
            instance_id=environ.get(constants.TAMER_INSTANCE_ID) or None,
        )
