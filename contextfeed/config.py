"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── TiDB (MySQL-protocol compatible) ───────────────────────────────────
    tidb_host: str = "tidb"
    tidb_port: int = 4000
    tidb_user: str = "root"
    tidb_password: str = ""
    tidb_database: str = "social_feed"

    @property
    def tidb_url(self) -> str:
        return (
            f"mysql+aiomysql://{self.tidb_user}:{self.tidb_password}"
            f"@{self.tidb_host}:{self.tidb_port}/{self.tidb_database}"
        )

    # ── Redis ──────────────────────────────────────────────────────────────
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_key_prefix: str = ""           # namespace for shared Redis instances

    # ── Kafka ──────────────────────────────────────────────────────────────
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_topic_interactions: str = "interactions"

    # ── Feast Feature Store ────────────────────────────────────────────────
    feast_server_url: str = "http://feast-feature-store:6566"
    feast_timeout_seconds: float = 1.5

    # ── Ranking Service (engagement predictor) ─────────────────────────────
    ranking_service_url: str = "http://ranking-service:8001"
    ranking_timeout_seconds: float = 2.0
    engagement_predictor: str = "remote"     # 'remote' | 'heuristic'

    # ── Candidate retrieval ────────────────────────────────────────────────
    candidate_pool_limit: int = 200      # hard cap on per-pass scoring cost
    candidate_recent_hours: int = 6      # global recent-content window
    following_cache_ttl: int = 3600      # 1h

    # ── Ranking ────────────────────────────────────────────────────────────
    ranking_concurrency: int = 16        # concurrent per-candidate scorings
    decay_hours: float = 24.0
    engagement_boost_weight: float = 0.1

    # ── Feed cache ─────────────────────────────────────────────────────────
    feed_cache_ttl: int = 900            # 15 min
    trending_cache_ttl: int = 1800       # 30 min
    session_marker_ttl: int = 86400      # 24h
    presence_last_seen_ttl: int = 86400  # 24h
    feed_page_size: int = 20
    contextual_pool_max: int = 100       # base pool size for contextual feeds

    # ── Trending ───────────────────────────────────────────────────────────
    trending_window_hours: int = 24
    trending_scan_limit: int = 1000
    trending_default_count: int = 10     # also pre-warmed by the warmup worker

    # ── Similar posts ──────────────────────────────────────────────────────
    similar_scan_limit: int = 500
    similar_lookback_days: int = 30
    similar_min_score: float = 0.3

    # ── Warmup worker ──────────────────────────────────────────────────────
    warmup_enabled: bool = True
    warmup_interval_seconds: int = 1800  # 30 min
    warmup_retry_seconds: int = 300      # 5 min backoff after a failed cycle
    warmup_batch_size: int = 10
    warmup_max_users: int = 100
    warmup_active_hours: int = 24
    warmup_pages: int = 2

    # ── Observability ──────────────────────────────────────────────────────
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "contextfeed"
    environment: str = "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
