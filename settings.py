import os
from dataclasses import dataclass


@dataclass
class RelaySettings:
    """Runtime settings, overridable via RELAY_* environment variables."""
    host: str = '0.0.0.0'
    port: int = 12345
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, environ=None):
        env = os.environ if environ is None else environ
        return cls(
            host=env.get('RELAY_HOST', cls.host),
            port=int(env.get('RELAY_PORT', cls.port)),
            log_level=env.get('RELAY_LOG_LEVEL', cls.log_level).upper(),
        )
