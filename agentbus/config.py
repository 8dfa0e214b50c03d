import os
from pathlib import Path


class Config:
    AGENTBUS_HOME: str = os.getenv('AGENTBUS_HOME', str(Path.home() / '.agentbus'))
    AGENTBUS_BACKEND: str = os.getenv('AGENTBUS_BACKEND', 'file')
    AGENTBUS_LOCK_TIMEOUT: float = float(os.getenv('AGENTBUS_LOCK_TIMEOUT', '10'))
    AGENTBUS_MAX_ATTEMPTS: int = int(os.getenv('AGENTBUS_MAX_ATTEMPTS', '10'))
    AGENTBUS_SETTLE_DELAY: float = float(os.getenv('AGENTBUS_SETTLE_DELAY', '2'))
    AGENTBUS_BACKOFF_DELAY: float = float(os.getenv('AGENTBUS_BACKOFF_DELAY', '3'))
    REDIS_URL: str = os.getenv('REDIS_URL', 'redis://localhost:6379')
    REDIS_MAX_CONNECTIONS: int = int(os.getenv('REDIS_MAX_CONNECTIONS', '50'))
    REDIS_SOCKET_CONNECT_TIMEOUT: int = int(os.getenv('REDIS_SOCKET_CONNECT_TIMEOUT', '5'))
    REDIS_SOCKET_TIMEOUT: int = int(os.getenv('REDIS_SOCKET_TIMEOUT', '5'))
    REDIS_RETRY_ON_TIMEOUT: bool = os.getenv('REDIS_RETRY_ON_TIMEOUT', 'true').lower() == 'true'


config = Config()
