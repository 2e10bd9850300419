"""Signaling server configuration file parsing."""
from __future__ import annotations

import logging
import pathlib
import sys

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    from typing import Self
else:  # pragma: <3.11 cover
    from typing_extensions import Self

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field

from callrelay.router import ANONYMOUS_NAME
from callrelay.utils.config import load


class LoggingConfig(BaseModel):
    """Signaling server logging configuration.

    Attributes:
        log_dir: Default logging directory.
        default_level: Default logging level for the root logger.
        websockets_level: Log level for the `websockets` logger. Websockets
            logs with much higher frequency so it is suggested to set this
            to `WARNING` or higher.
        participant_log_interval: Optional seconds between logging the
            number of currently logged in participants.
        participant_log_limit: Max threshold for enumerating the detailed
            list of logged in participants. If `None`, no detailed list will
            be logged.
    """

    model_config = ConfigDict(extra='forbid')

    log_dir: str | None = None
    default_level: int | str = logging.INFO
    websockets_level: int | str = logging.WARNING
    participant_log_interval: int | None = 60
    participant_log_limit: int | None = 32


class ServingConfig(BaseModel):
    """Signaling server serving configuration.

    Attributes:
        host: Network interface the server binds to.
        port: Network port the server binds to.
        certfile: Certificate file (PEM format) use to enable TLS.
        keyfile: Private key file. If not specified, the key will be
            taken from the certfile.
        anonymous_name: Name substituted for senders that have not logged in.
        max_message_bytes: Maximum size in bytes of messages received by
            the server. Larger messages are dropped.
        logging: Logging configuration.
    """

    model_config = ConfigDict(extra='forbid')

    host: str | None = None
    port: int = 8765
    certfile: str | None = None
    keyfile: str | None = None
    anonymous_name: str = ANONYMOUS_NAME
    max_message_bytes: int | None = None
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_toml(cls, filepath: str | pathlib.Path) -> Self:
        """Parse a TOML config file.

        Example:
            ```toml title="callrelay.toml"
            host = "0.0.0.0"
            port = 8765
            certfile = "/path/to/cert.pem"
            keyfile = "/path/to/privkey.pem"

            [logging]
            log_dir = "/path/to/log/dir"
            default_level = "INFO"
            websockets_level = "WARNING"
            participant_log_interval = 60
            participant_log_limit = 32
            ```

        Note:
            Omitted values will be set to their defaults.
        """
        with open(filepath, 'rb') as f:
            return load(cls, f)
