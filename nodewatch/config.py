from __future__ import annotations

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Node RPC (geth serves WebSocket RPC on 8546 when started with --ws)
    ws_url: str = "ws://127.0.0.1:8546"
    connection_timeout_s: float = Field(default=30.0, gt=0)
    request_timeout_s: float = Field(default=30.0, gt=0)
    # bound on each eth_unsubscribe during shutdown; a silent node must not block exit
    unsubscribe_timeout_s: float = Field(default=10.0, gt=0)

    # WebSocket limits
    ws_max_msg_size: int = 16 * 1024 * 1024

    # Logging
    log_level: str = "INFO"
    log_json: bool = False

    # Optional ZMQ republishing of observed events (off when unset)
    zmq_pub_bind: Optional[str] = None  # e.g. tcp://127.0.0.1:28332
    zmq_sndhwm: int = 10000
    linger_ms: int = 0

    class Config:
        env_prefix = "NODEWATCH_"
        env_file = ".env"
        extra = "ignore"
