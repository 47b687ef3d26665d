"""Tests for nerdctl output parsing and command building."""

from kai.runtime.nerdctl import (
    build_run_args,
    health_cmd,
    map_inspect_state,
    map_status_state,
    parse_bytes,
    parse_health,
    parse_ndjson,
    parse_pair,
    parse_percent,
    parse_ports,
    parse_prune_output,
)
from kai.runtime.types import ContainerConfig, HealthCheck, VolumeBinding


class TestParseBytes:
    def test_si_units(self):
        assert parse_bytes("1.5GB") == 1_500_000_000
        assert parse_bytes("12kB") == 12_000
        assert parse_bytes("0B") == 0

    def test_binary_units(self):
        assert parse_bytes("128MiB") == 128 * 1024 * 1024
        assert parse_bytes("2KiB") == 2048

    def test_garbage_is_zero(self):
        assert parse_bytes("") == 0
        assert parse_bytes("n/a") == 0

    def test_pair_and_percent(self):
        assert parse_pair("10MiB / 1GiB") == (10 * 1024**2, 1024**3)
        assert parse_percent("12.5%") == 12.5
        assert parse_percent("--") == 0.0


class TestPsParsing:
    def test_ports(self):
        ports = parse_ports("0.0.0.0:9900->9900/tcp, 0.0.0.0:6334->6334/udp")
        assert [(p.container_port, p.host_port, p.protocol) for p in ports] == [
            (9900, 9900, "tcp"),
            (6334, 6334, "udp"),
        ]

    def test_health_from_status(self):
        assert parse_health("Up 5 minutes (healthy)") == "healthy"
        assert parse_health("Up 3 seconds (health: starting)") == "starting"
        assert parse_health("Up 2 hours") is None

    def test_status_state(self):
        assert map_status_state("Up 2 minutes") == "running"
        assert map_status_state("Exited (0) 3 minutes ago") == "exited"
        assert map_status_state("Up 2 minutes (Paused)") == "paused"
        assert map_status_state("Created") == "stopped"
        assert map_status_state("whatever", "created") == "stopped"
        assert map_status_state("", "restarting") == "restarting"

    def test_inspect_state(self):
        assert map_inspect_state({"Running": True, "Status": "running"}) == "running"
        assert map_inspect_state({"Paused": True}) == "paused"
        assert map_inspect_state({"Status": "exited"}) == "exited"
        assert map_inspect_state({}) == "stopped"

    def test_ndjson_skips_malformed_lines(self):
        output = '{"Names": "kai-backend"}\nnot json\n\n{"Names": "kai-qdrant"}\n'
        rows = parse_ndjson(output, "containers")
        assert [r["Names"] for r in rows] == ["kai-backend", "kai-qdrant"]


class TestPruneOutput:
    def test_counts_deleted_entries(self):
        output = (
            "Deleted Containers:\n"
            "4a5b6c\n"
            "7d8e9f\n"
            "\n"
            "Total reclaimed space: 12.5MB\n"
        )
        assert parse_prune_output(output) == (2, 12_500_000)

    def test_untagged_lines_not_counted(self):
        output = "Deleted Images:\nuntagged: busybox:latest\ndeleted: sha256:abc\n"
        assert parse_prune_output(output) == (1, 0)

    def test_empty(self):
        assert parse_prune_output("") == (0, 0)


class TestBuildRunArgs:
    def test_full_config(self):
        config = ContainerConfig(
            name="kai-qdrant",
            image="qdrant/qdrant:latest",
            env={"A": "1"},
            ports={"6333": "16333"},
            volumes=[VolumeBinding(host="qdrant-data", container="/qdrant/storage")],
            networks=["kai-net", "other"],
            restart="unless-stopped",
            labels={"app": "kai"},
            command=["serve"],
            healthcheck=HealthCheck(
                test=["CMD", "curl", "-f", "http://localhost:6333/"],
                interval_s=10,
                timeout_s=5,
                retries=3,
                start_period_s=10,
            ),
        )
        args = build_run_args(config)

        assert args[:4] == ["run", "-d", "--name", "kai-qdrant"]
        assert args[args.index("-p") + 1] == "16333:6333"
        assert args[args.index("-v") + 1] == "qdrant-data:/qdrant/storage"
        assert args[args.index("--network") + 1] == "kai-net"
        assert args[args.index("--restart") + 1] == "unless-stopped"
        assert args[args.index("--health-cmd") + 1] == "curl -f http://localhost:6333/"
        assert args[args.index("--health-interval") + 1] == "10s"
        assert args[args.index("--health-start-period") + 1] == "10s"
        assert args[-2:] == ["qdrant/qdrant:latest", "serve"]

    def test_cmd_shell_health(self):
        check = HealthCheck(test=["CMD-SHELL", "pg_isready", "-U", "postgres"])
        assert health_cmd(check) == "pg_isready -U postgres"
