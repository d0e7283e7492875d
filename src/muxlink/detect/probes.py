"""Declarative probe catalog for remote service detection.

Each row describes how to find one service type on the peer: an
existence command, a version command, an ordered list of liveness
checks, and optionally how to find it running inside a container when
the native binary is absent. New services are added here as data.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class StatusCheck(BaseModel):
    """One liveness command; passes on exit 0 with ``expect`` in its output."""

    model_config = ConfigDict(frozen=True)

    command: str
    expect: str = Field(default="", description="Required output substring; empty means exit code only")


class ContainerProbe(BaseModel):
    """How to find the service running in a container."""

    model_config = ConfigDict(frozen=True)

    list_command: str = Field(
        description="Lists matching containers as 'id|image|ports' lines"
    )
    version_command: str = Field(
        description="Version command run in the container; '{container_id}' is substituted"
    )


class ProbeSpec(BaseModel):
    """One row of the probe table."""

    model_config = ConfigDict(frozen=True)

    name: str
    exists_command: str
    version_command: str
    status_checks: tuple[StatusCheck, ...] = ()
    default_port: int = Field(default=0, ge=0, le=65535)
    container: ContainerProbe | None = None


def _container_listing(*images: str) -> str:
    filters = " ".join(f"--filter 'ancestor={image}'" for image in images)
    pattern = "\\|".join(images)
    return (
        f"docker ps {filters} --format '{{{{.ID}}}}|{{{{.Image}}}}|{{{{.Ports}}}}' 2>/dev/null | grep . || "
        f"docker ps --format '{{{{.ID}}}}|{{{{.Image}}}}|{{{{.Ports}}}}' 2>/dev/null | grep -i '{pattern}'"
    )


MYSQL = ProbeSpec(
    name="mysql",
    exists_command="which mysql 2>/dev/null || which mysqld 2>/dev/null",
    version_command="mysql --version 2>/dev/null",
    status_checks=(
        StatusCheck(
            command=(
                "systemctl is-active mysql 2>/dev/null || systemctl is-active mysqld 2>/dev/null"
                " || systemctl is-active mariadb 2>/dev/null"
            ),
            expect="active",
        ),
        StatusCheck(command="pgrep -x mysqld >/dev/null 2>&1 && echo active", expect="active"),
    ),
    default_port=3306,
    container=ContainerProbe(
        list_command=_container_listing("mysql", "mariadb"),
        version_command="docker exec {container_id} mysql --version 2>/dev/null",
    ),
)

REDIS = ProbeSpec(
    name="redis",
    exists_command="which redis-server 2>/dev/null || which redis-cli 2>/dev/null",
    version_command="redis-cli --version 2>/dev/null",
    status_checks=(
        StatusCheck(command="redis-cli ping 2>/dev/null", expect="PONG"),
        StatusCheck(
            command="systemctl is-active redis 2>/dev/null || systemctl is-active redis-server 2>/dev/null",
            expect="active",
        ),
        StatusCheck(command="pgrep -x redis-server >/dev/null 2>&1 && echo active", expect="active"),
    ),
    default_port=6379,
    container=ContainerProbe(
        list_command=_container_listing("redis"),
        version_command="docker exec {container_id} redis-server --version 2>/dev/null",
    ),
)

DOCKER = ProbeSpec(
    name="docker",
    exists_command="which docker 2>/dev/null",
    version_command="docker --version 2>/dev/null",
    status_checks=(
        StatusCheck(command="docker info >/dev/null 2>&1"),
        StatusCheck(command="systemctl is-active docker 2>/dev/null", expect="active"),
        StatusCheck(command="pgrep -x dockerd >/dev/null 2>&1 && echo active", expect="active"),
    ),
    default_port=0,
)

POSTGRESQL = ProbeSpec(
    name="postgresql",
    exists_command="which psql 2>/dev/null",
    version_command="psql --version 2>/dev/null",
    status_checks=(
        StatusCheck(command="systemctl is-active postgresql 2>/dev/null", expect="active"),
        StatusCheck(command="pgrep -x postgres >/dev/null 2>&1 && echo active", expect="active"),
    ),
    default_port=5432,
    container=ContainerProbe(
        list_command=_container_listing("postgres"),
        version_command="docker exec {container_id} postgres --version 2>/dev/null",
    ),
)

DEFAULT_PROBES: tuple[ProbeSpec, ...] = (MYSQL, REDIS, DOCKER, POSTGRESQL)
