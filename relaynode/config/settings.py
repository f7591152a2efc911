"""Global node settings"""

from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Centralized configuration.
    Reads configs from RELAY_* env variables.
    """

    app_name: str = "Relay Node"
    host: str = "0.0.0.0"
    server_port: int = 8000
    log_level: str = "INFO"

    node_id: Optional[str] = None

    advertised_addr: Optional[str] = None

    # Seed nodes dialled for anti-entropy, comma separated base URLs
    bootstrap_peers: str = ""
    # Bootnodes serve snapshots but never pull
    bootnode: bool = False

    # No Redis means no overlay, the node runs standalone
    redis_url: Optional[str] = None
    overlay_topic: str = "room-updates"
    channel_prefix: str = "relaynode"
    heartbeat_interval: float = 5.0
    peer_expiry: float = 15.0

    outbound_queue_size: int = 256

    # Rooms without local members are dropped after this many seconds, None keeps them
    room_ttl_seconds: Optional[float] = 3600.0
    reap_interval: float = 60.0
    sync_interval: float = 10.0

    model_config = {"env_file": ".env", "env_prefix": "RELAY_"}

    @property
    def peer_list(self) -> List[str]:
        return [p.strip() for p in self.bootstrap_peers.split(",") if p.strip()]


settings = Settings()

if not settings.advertised_addr:
    settings.advertised_addr = f"http://localhost:{settings.server_port}"
