from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RigSettings(BaseSettings):
    """benchrig control plane configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="BENCHRIG_", env_file=".env", extra="ignore"
    )

    project_root: Path = Field(
        Path("."),
        description="Working directory for every external command.",
    )
    cluster_path: Path = Field(
        Path("../redis-cluster"),
        description="Directory holding one sub-directory per cluster node port.",
    )
    cluster_host: str = Field(
        "127.0.0.1", description="Host every cluster node listens on."
    )
    cluster_port_min: int = Field(7000, description="Lowest cluster node port.")
    cluster_port_max: int = Field(7999, description="Highest cluster node port.")
    topology_ttl: float = Field(
        5.0, description="Seconds a discovered primary set stays fresh."
    )

    fast_interval: float = Field(
        1.0, description="Seconds between fast-lane (volatile metric) polls."
    )
    slow_interval: float = Field(
        5.0, description="Seconds between slow-lane (benchmark history) polls."
    )
    refresh_delay: float = Field(
        1.0, description="Delay before an out-of-band refresh after a command."
    )

    command_timeout: float = Field(
        30.0, description="Timeout in seconds for administrative commands."
    )
    stats_timeout: float = Field(
        5.0, description="Timeout in seconds for cluster node stat queries."
    )
    process_timeout: float = Field(
        10.0, description="Timeout in seconds for process-manager queries."
    )
    benchmark_timeout: float = Field(
        60.0, description="Timeout in seconds for a load test run."
    )
    max_output_bytes: int = Field(
        1024 * 1024, description="Output limit for ordinary commands."
    )
    process_output_bytes: int = Field(
        5 * 1024 * 1024,
        description="Output limit for process-manager listings, which can be large.",
    )

    history_limit: int = Field(
        20, description="Benchmark results retained in the history ring."
    )
    benchmark_recent: int = Field(
        3, description="Benchmark results published per slow-lane tick."
    )
    max_subscribers_per_stream: int = Field(
        50, description="Maximum subscribers the event bus accepts per stream."
    )

    frameworks: tuple[str, ...] = Field(
        ("fastify", "bun", "csharp", "cpeak", "express"),
        description="Declared worker names the process manager may run.",
    )
    max_instances: int = Field(100, description="Hard limit for worker instances.")
    warn_instances: int = Field(
        50, description="Instance count above which confirmation is required."
    )
    min_cluster_nodes: int = Field(3, description="Minimum cluster node count.")

    benchmark_host: str = Field(
        "localhost", description="Host the load generator targets."
    )
    framework_ports: dict[str, int] = Field(
        default_factory=lambda: {
            "cpeak": 3000,
            "express": 3001,
            "fastify": 3002,
            "bun": 3003,
            "csharp": 3004,
        },
        description="HTTP port each framework listens on.",
    )
    benchmark_duration: int = Field(
        10, description="Load test duration in seconds."
    )

    log_level: str = Field("INFO", description="loguru level for the stderr sink.")
    debug_scopes: tuple[str, ...] = Field(
        (), description="Module prefixes that log at DEBUG regardless of level."
    )

    # Command templates. Placeholders are filled with str.format.
    cluster_setup_command: str = "node redis.js -setup -n {nodes} -r {replicas}"
    cluster_stop_command: str = "node redis.js -stop"
    cluster_resume_command: str = "node redis.js -resume"
    cluster_clean_command: str = "node redis.js -clean"
    cluster_status_command: str = "node redis.js -status"
    topology_command: str = "redis-cli -h {host} -p {port} CLUSTER NODES"
    node_info_command: str = "redis-cli -h {host} -p {port} INFO {section}"
    process_list_command: str = "pm2 ls"
    worker_start_command: str = "node pm2.js -start -f {framework} -i {instances}"
    worker_stop_command: str = "node pm2.js -stop -f {framework}"
    worker_restart_command: str = "pm2 restart {framework}"
    worker_delete_command: str = "pm2 delete {framework}"
    load_test_command: str = (
        "autocannon --json -c {connections} -w {workers} -p {pipelining} "
        "-d {duration} -m {method} {url}"
    )

    @property
    def port_range(self) -> tuple[int, int]:
        return (self.cluster_port_min, self.cluster_port_max)

    def framework_url(self, framework: str, endpoint: str) -> str:
        port = self.framework_ports.get(framework, 3000)
        return f"http://{self.benchmark_host}:{port}{endpoint}"

    @property
    def is_remote_benchmark(self) -> bool:
        return self.benchmark_host not in ("localhost", "127.0.0.1", "::1")
