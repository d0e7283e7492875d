"""Tests for remote service detection."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock

import pytest

from muxlink.detect.detector import ServiceDetector, parse_published_port, parse_version
from muxlink.detect.probes import DEFAULT_PROBES, ContainerProbe, ProbeSpec, StatusCheck
from muxlink.domain.models import CommandResult, ServiceStatus


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(exit_code=0, stdout=stdout)


class TestParseVersion:
    def test_mysql_banner(self) -> None:
        assert parse_version("mysql  Ver 8.0.35 for Linux on x86_64 (MySQL Community Server - GPL)") == "8.0.35"

    def test_first_line_fallback(self) -> None:
        assert parse_version("no version info") == "no version info"

    def test_first_line_of_many(self) -> None:
        assert parse_version("first line\nsecond line") == "first line"

    def test_strips_punctuation(self) -> None:
        assert parse_version("Docker version 24.0.7, build afdd53b") == "24.0.7"

    def test_redis_version_token(self) -> None:
        assert parse_version("redis-cli 7.2.4") == "7.2.4"

    def test_empty_output(self) -> None:
        assert parse_version("") == "unknown"


class TestParsePublishedPort:
    def test_published_mapping(self) -> None:
        assert parse_published_port("0.0.0.0:13306->3306/tcp, :::13306->3306/tcp", 3306) == 13306

    def test_unpublished(self) -> None:
        assert parse_published_port("3306/tcp, 33060/tcp", 3306) is None

    def test_does_not_match_port_prefix(self) -> None:
        assert parse_published_port("0.0.0.0:16379->63790/tcp", 6379) is None


class TestProbeCatalog:
    def test_catalog_order(self) -> None:
        assert [spec.name for spec in DEFAULT_PROBES] == ["mysql", "redis", "docker", "postgresql"]

    def test_container_fallback_template(self) -> None:
        mysql = DEFAULT_PROBES[0]
        assert mysql.container is not None
        assert "{container_id}" in mysql.container.version_command
        assert "{{.ID}}|{{.Image}}|{{.Ports}}" in mysql.container.list_command


class TestServiceDetector:
    @pytest.mark.asyncio
    async def test_running_native_service(self, mock_broker, scripted, address) -> None:
        mock_broker.exec.side_effect = scripted({
            "which redis-server": ok("/usr/bin/redis-server"),
            "redis-cli --version": ok("redis-cli 7.2.4"),
            "redis-cli ping": ok("PONG"),
        })
        services = await ServiceDetector(mock_broker).detect_all(address)

        assert len(services) == 1
        redis = services[0]
        assert redis.name == "redis"
        assert redis.version == "7.2.4"
        assert redis.status == ServiceStatus.RUNNING
        assert redis.port == 6379

    @pytest.mark.asyncio
    async def test_installed_but_stopped(self, mock_broker, scripted, address) -> None:
        mock_broker.exec.side_effect = scripted({
            "which psql": ok("/usr/bin/psql"),
            "psql --version": ok("psql (PostgreSQL) 16.1"),
            "systemctl is-active postgresql": CommandResult(exit_code=3, stdout="inactive"),
        })
        services = await ServiceDetector(mock_broker).detect_all(address)

        assert [(s.name, s.version, s.status) for s in services] == [
            ("postgresql", "16.1", ServiceStatus.STOPPED)
        ]

    @pytest.mark.asyncio
    async def test_status_checks_run_in_order(self, mock_broker, scripted, address) -> None:
        mock_broker.exec.side_effect = scripted({
            "which redis-server": ok("/usr/bin/redis-server"),
            "redis-cli --version": ok("redis-cli 7.0.15"),
            "redis-cli ping": ok("NOAUTH Authentication required."),
            "systemctl is-active redis": ok("active"),
        })
        services = await ServiceDetector(mock_broker).detect_all(address)
        assert services[0].status == ServiceStatus.RUNNING

    @pytest.mark.asyncio
    async def test_exit_code_only_check(self, mock_broker, scripted, address) -> None:
        mock_broker.exec.side_effect = scripted({
            "which docker": ok("/usr/bin/docker"),
            "docker --version": ok("Docker version 24.0.7, build afdd53b"),
            "docker info": ok(""),
        })
        services = await ServiceDetector(mock_broker).detect_all(address)
        assert [(s.name, s.version, s.status, s.port) for s in services] == [
            ("docker", "24.0.7", ServiceStatus.RUNNING, 0)
        ]

    @pytest.mark.asyncio
    async def test_all_absent(self, mock_broker, address) -> None:
        mock_broker.exec.return_value = CommandResult(exit_code=1, stdout="")
        assert await ServiceDetector(mock_broker).detect_all(address) == []

    @pytest.mark.asyncio
    async def test_container_fallback(self, mock_broker, scripted, address) -> None:
        mock_broker.exec.side_effect = scripted({
            "docker ps": ok("3f2a9c1b7e4d|mysql:8.0|0.0.0.0:13306->3306/tcp, 33060/tcp"),
            "docker exec 3f2a9c1b7e4d mysql --version": ok("mysql  Ver 8.0.36 for Linux on x86_64"),
        })
        spec = DEFAULT_PROBES[0]
        service = await ServiceDetector(mock_broker).probe(address, spec)

        assert service is not None
        assert service.name == "mysql"
        assert service.version == "8.0.36"
        assert service.status == ServiceStatus.RUNNING
        assert service.port == 13306

    @pytest.mark.asyncio
    async def test_container_version_from_image_tag(self, mock_broker, scripted, address) -> None:
        mock_broker.exec.side_effect = scripted({
            "docker ps": ok("a1b2c3|postgres:15.4|5432/tcp"),
        })
        service = await ServiceDetector(mock_broker).probe(address, DEFAULT_PROBES[3])

        assert service is not None
        assert service.version == "15.4"
        assert service.port == 5432

    @pytest.mark.asyncio
    async def test_container_listing_uses_longer_timeout(self, mock_broker, address) -> None:
        detector = ServiceDetector(mock_broker, probe_timeout=3, container_timeout=9)
        await detector.probe(address, DEFAULT_PROBES[0])

        timeouts = {call.args[1]: call.args[2] for call in mock_broker.exec.call_args_list}
        assert timeouts[DEFAULT_PROBES[0].exists_command] == 3
        assert timeouts[DEFAULT_PROBES[0].container.list_command] == 9

    @pytest.mark.asyncio
    async def test_failing_probe_treated_as_absent(self, mock_broker, scripted, address) -> None:
        answer = scripted({
            "which redis-server": ok("/usr/bin/redis-server"),
            "redis-cli --version": ok("redis-cli 7.2.4"),
            "redis-cli ping": ok("PONG"),
        })

        async def flaky(addr, command, timeout=None):
            if "mysql" in command:
                raise RuntimeError("channel closed")
            return await answer(addr, command, timeout)

        mock_broker.exec.side_effect = flaky
        services = await ServiceDetector(mock_broker).detect_all(address)
        assert [s.name for s in services] == ["redis"]

    @pytest.mark.asyncio
    async def test_probes_run_concurrently(self, mock_broker, address) -> None:
        delays = {"alpha": 0.2, "beta": 0.3, "gamma": 0.25, "delta": 0.1}
        probes = tuple(
            ProbeSpec(
                name=name,
                exists_command=f"which {name}",
                version_command=f"{name} --version",
                status_checks=(StatusCheck(command=f"pgrep {name}"),),
            )
            for name in delays
        )

        async def slow(addr, command, timeout=None):
            name = command.split()[-1] if command.startswith("which") else command.split()[0]
            if command.startswith("which"):
                await asyncio.sleep(delays[name])
            return ok(f"{name} 1.0.0")

        mock_broker.exec.side_effect = slow
        started = time.monotonic()
        services = await ServiceDetector(mock_broker, probes=probes).detect_all(address)
        elapsed = time.monotonic() - started

        assert [s.name for s in services] == ["alpha", "beta", "gamma", "delta"]
        assert elapsed < 0.3 + 0.15
        assert elapsed < sum(delays.values())

    @pytest.mark.asyncio
    async def test_new_service_added_as_data(self, mock_broker, scripted, address) -> None:
        nginx = ProbeSpec(
            name="nginx",
            exists_command="which nginx",
            version_command="nginx -v 2>&1",
            status_checks=(StatusCheck(command="systemctl is-active nginx", expect="active"),),
            default_port=80,
            container=ContainerProbe(
                list_command="docker ps | grep nginx",
                version_command="docker exec {container_id} nginx -v 2>&1",
            ),
        )
        mock_broker.exec.side_effect = scripted({
            "which nginx": ok("/usr/sbin/nginx"),
            "nginx -v": ok("nginx version: nginx/1.24.0"),
            "systemctl is-active nginx": ok("active"),
        })
        services = await ServiceDetector(mock_broker, probes=(nginx,)).detect_all(address)
        assert [(s.name, s.version, s.status, s.port) for s in services] == [
            ("nginx", "nginx/1.24.0", ServiceStatus.RUNNING, 80)
        ]
