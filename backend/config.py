# backend/config.py
"""
Configuration management for the Facility Sentinel backend
Loads settings from environment variables
"""

from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    debug: bool = True

    # Database
    database_url: str = "sqlite:///./sentinel.db"

    # CORS Settings
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
    cors_allow_credentials: bool = True

    # Discovery
    discovery_max_targets: int = 20  # Hard cap on probes per scan
    discovery_probe_timeout_seconds: float = 1.0
    discovery_onvif_ports: str = "80,8080"
    discovery_rtsp_port: int = 554
    discovery_http_port: int = 80
    discovery_demo_device_count: int = 2
    discovery_demo_base_address: str = "192.168.1.100"
    discovery_environment_check: bool = True

    # Discovery rate limiting
    discovery_min_interval_seconds: int = 10
    discovery_max_requests_per_minute: int = 5
    discovery_global_max_per_minute: int = 20

    # Protocol timeouts
    onvif_timeout_seconds: float = 3.0
    rtsp_test_timeout_seconds: float = 2.0
    http_ping_timeout_seconds: float = 2.0

    # Default camera credentials (used when a request carries none)
    onvif_default_username: str = "admin"
    onvif_default_password: str = "admin"

    # Network monitor
    monitor_interval_seconds: float = 5.0
    monitor_latency_timeout_seconds: float = 5.0
    monitor_latency_endpoints: str = (
        "https://www.google.com/favicon.ico,"
        "https://www.cloudflare.com/favicon.ico,"
        "https://www.github.com/favicon.ico"
    )
    monitor_packet_loss_batch: int = 10
    monitor_packet_loss_timeout_seconds: float = 2.0
    monitor_metrics_history: int = 100
    monitor_alert_history: int = 50
    monitor_autostart: bool = False

    # Media server (RTSP -> HLS transcoder, external)
    media_server_url: str = "http://localhost:8000"
    media_server_timeout_seconds: int = 5

    # Logging
    log_level: str = "INFO"

    @property
    def onvif_ports(self) -> List[int]:
        """ONVIF ports to probe, in priority order"""
        return [int(p) for p in self.discovery_onvif_ports.split(",") if p.strip()]

    @property
    def latency_endpoints(self) -> List[str]:
        """Endpoints used for latency and packet loss sampling"""
        return [e.strip() for e in self.monitor_latency_endpoints.split(",") if e.strip()]

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env file


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get application settings"""
    return settings
