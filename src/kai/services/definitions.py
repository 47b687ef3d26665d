"""Static registry of the containers that make up a Kai installation."""

from __future__ import annotations

from pathlib import Path

from kai.infrastructure.settings import KaiConfig
from kai.runtime.types import ContainerConfig, HealthCheck, VolumeBinding
from kai.services.types import ServiceDefinition

DOCKER_SOCKET = "/var/run/docker.sock"
REQUIRED_VOLUMES = ("kai-data", "qdrant-data", "neo4j-data", "neo4j-logs")
DEFAULT_NETWORK = "kai-net"


def _flag(value: bool) -> str:
    return "true" if value else "false"


def _backend(config: KaiConfig) -> ContainerConfig:
    backend = config.services.backend
    env = config.env
    port = str(backend.port)
    return ContainerConfig(
        name="kai-backend",
        image="kai-backend:latest",
        env={
            "NODE_ENV": backend.node_env,
            "PORT": port,
            "DOCKER_NETWORK": env.docker_network,
            "IMAGE_NAME": env.image_name,
            "KAI_BASE_ROOT": config.base_directory,
            "USER_ID": str(env.user_id),
            "GROUP_ID": str(env.group_id),
            "ENABLE_PERSISTENT_AI_SESSIONS": _flag(env.enable_persistent_ai_sessions),
            "AI_SESSION_MODE": env.ai_session_mode,
            "TASK_COMPLETION_TIMEOUT": str(env.task_completion_timeout),
            "CONTEXT_ENABLED": _flag(env.context_enabled),
            "QDRANT_URL": "http://kai-qdrant:6333",
            "NEO4J_URI": "bolt://kai-neo4j:7687",
            "NEO4J_USER": "neo4j",
            "NEO4J_PASSWORD": config.services.neo4j.password,
            "EMBEDDING_PROVIDER": env.embedding_provider,
            "EMBEDDING_MODEL": env.embedding_model,
            "EMBEDDING_DIMENSIONS": str(env.embedding_dimensions),
            "AUTO_CAPTURE_ENABLED": _flag(env.auto_capture_enabled),
            "EXTRACT_FACTS_ENABLED": _flag(env.extract_facts_enabled),
        },
        ports={port: port},
        volumes=[
            VolumeBinding(host=DOCKER_SOCKET, container=DOCKER_SOCKET),
            VolumeBinding(host="kai-data", container="/app/data"),
            VolumeBinding(host=config.base_directory, container="/base-root"),
        ],
        networks=[env.docker_network],
        restart="unless-stopped",
        healthcheck=HealthCheck(
            test=["CMD", "wget", "-q", "--spider", f"http://localhost:{port}/api/health"],
            interval_s=15,
            timeout_s=5,
            retries=3,
            start_period_s=30,
        ),
    )


def _code_server(config: KaiConfig) -> ContainerConfig:
    base = Path(config.base_directory)
    return ContainerConfig(
        name="kai-code-server",
        image="codercom/code-server:latest",
        command=["--bind-addr", "0.0.0.0:8080"],
        env={
            "PASSWORD": config.services.code_server.password,
            "USER_ID": str(config.env.user_id),
            "GROUP_ID": str(config.env.group_id),
        },
        ports={"8080": str(config.services.code_server.port)},
        volumes=[
            VolumeBinding(host=DOCKER_SOCKET, container=DOCKER_SOCKET),
            VolumeBinding(host=config.base_directory, container="/base-root"),
            VolumeBinding(host=str(base / ".kai" / "code-server" / "config"), container="/home/coder/.config"),
            VolumeBinding(host=str(base / ".kai" / "code-server" / "local"), container="/home/coder/.local"),
        ],
        networks=[config.env.docker_network],
        restart="unless-stopped",
    )


def _qdrant(config: KaiConfig) -> ContainerConfig:
    return ContainerConfig(
        name="kai-qdrant",
        image="qdrant/qdrant:latest",
        ports={"6333": str(config.services.qdrant.port), "6334": "6334"},
        volumes=[VolumeBinding(host="qdrant-data", container="/qdrant/storage")],
        networks=[config.env.docker_network],
        restart="unless-stopped",
        healthcheck=HealthCheck(
            test=["CMD", "curl", "-f", "http://localhost:6333/"],
            interval_s=10,
            timeout_s=5,
            retries=3,
            start_period_s=10,
        ),
    )


def _neo4j(config: KaiConfig) -> ContainerConfig:
    password = config.services.neo4j.password
    return ContainerConfig(
        name="kai-neo4j",
        image="neo4j:5-community",
        env={
            "NEO4J_AUTH": f"neo4j/{password}",
            "NEO4J_PLUGINS": '["apoc"]',
            "NEO4J_dbms_security_procedures_unrestricted": "apoc.*",
            "NEO4J_dbms_security_procedures_allowlist": "apoc.*",
        },
        ports={"7474": "7474", "7687": str(config.services.neo4j.port)},
        volumes=[
            VolumeBinding(host="neo4j-data", container="/data"),
            VolumeBinding(host="neo4j-logs", container="/logs"),
        ],
        networks=[config.env.docker_network],
        restart="unless-stopped",
        healthcheck=HealthCheck(
            test=["CMD", "cypher-shell", "-u", "neo4j", "-p", password, "RETURN 1"],
            interval_s=10,
            timeout_s=5,
            retries=5,
            start_period_s=30,
        ),
    )


def service_definitions() -> dict[str, ServiceDefinition]:
    return {
        "backend": ServiceDefinition(
            name="backend",
            display_name="Backend",
            description="Kai backend API server",
            container_config=_backend,
            essential=True,
            depends_on=("qdrant", "neo4j"),
        ),
        "codeServer": ServiceDefinition(
            name="codeServer",
            display_name="Code Server",
            description="VS Code web IDE",
            container_config=_code_server,
            essential=False,
        ),
        "qdrant": ServiceDefinition(
            name="qdrant",
            display_name="Qdrant",
            description="Vector database for context system",
            container_config=_qdrant,
            essential=True,
        ),
        "neo4j": ServiceDefinition(
            name="neo4j",
            display_name="Neo4j",
            description="Graph database for context system",
            container_config=_neo4j,
            essential=True,
        ),
    }


def required_network(config: KaiConfig | None = None) -> str:
    return config.env.docker_network if config else DEFAULT_NETWORK


def sandbox_config(config: KaiConfig, sandbox_id: str, project_path: str) -> ContainerConfig:
    """Container for a per-project development sandbox launched by the backend."""
    return ContainerConfig(
        name=f"flexy-{sandbox_id}",
        image=config.env.image_name,
        env={"USER_ID": str(config.env.user_id), "GROUP_ID": str(config.env.group_id)},
        volumes=[VolumeBinding(host=project_path, container="/workspace")],
        networks=[config.env.docker_network],
        restart="unless-stopped",
        labels={"kai.sandbox": "true", "kai.sandbox.id": sandbox_id},
    )
