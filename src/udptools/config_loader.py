"""
udptools Configuration Loader
Parses udptools.yaml and provides config to the reflector and probe tools
"""

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

import yaml

from udptools.prober import BATCH_SIZE, DEFAULT_TIMEOUT
from udptools.receivers import DEFAULT_BATCH_SIZE
from udptools.reflector import DEFAULT_MAX_DATAGRAM

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = os.getenv("UDPTOOLS_CONFIG", "")


class ConfigError(ValueError):
    """Configuration file is missing, malformed or inconsistent"""


@dataclass
class ListenConfig:
    """One reflector listening address"""
    host: Optional[str]
    port: int
    name: Optional[str] = None

    @property
    def label(self) -> str:
        return self.name or f"{self.host or '*'}:{self.port}"


@dataclass
class ReflectorConfig:
    """Reflector parameters"""
    listen: List[ListenConfig] = field(default_factory=list)
    batch_size: int = DEFAULT_BATCH_SIZE
    max_datagram: int = DEFAULT_MAX_DATAGRAM
    prefer_batch: bool = True
    feedback: bool = False


@dataclass
class ProbeConfig:
    """Prober parameters"""
    host: Optional[str] = None
    port: Optional[int] = None
    protocol: Optional[str] = None
    source: Optional[str] = None
    connected: bool = True
    repeat: int = 1
    batch_size: int = BATCH_SIZE
    timeout: float = DEFAULT_TIMEOUT
    flood: bool = False


@dataclass
class SystemConfig:
    """Complete configuration"""
    reflector: ReflectorConfig = field(default_factory=ReflectorConfig)
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    metrics_port: int = 0


def parse_listen(text: str) -> ListenConfig:
    """Parse 'port', 'host:port' or '[v6addr]:port'"""
    text = text.strip()
    host: Optional[str] = None
    port = text
    if text.startswith("["):
        addr, sep, rest = text[1:].partition("]")
        if not sep or not rest.startswith(":"):
            raise ConfigError(f"bad listen address {text!r}")
        host, port = addr, rest[1:]
    elif ":" in text:
        host, port = text.rsplit(":", 1)
    try:
        return ListenConfig(host=host or None, port=int(port))
    except ValueError:
        raise ConfigError(f"bad port in listen address {text!r}") from None


class ConfigLoader:
    """Loads and validates udptools.yaml configuration"""

    @staticmethod
    def load(config_path: str) -> SystemConfig:
        """Load configuration from YAML file"""
        try:
            with open(config_path, 'r') as f:
                config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.error(f"Config file not found: {config_path}")
            raise
        except yaml.YAMLError as e:
            logger.error(f"YAML parsing error: {e}")
            raise ConfigError(f"{config_path}: {e}") from e

        logger.info(f"Loaded configuration from {config_path}")
        return ConfigLoader._parse_config(config)

    @staticmethod
    def _parse_config(config: dict) -> SystemConfig:
        """Parse configuration dictionary"""
        if not isinstance(config, dict):
            raise ConfigError("top level must be a mapping")

        try:
            refl = config.get('reflector') or {}
            listen = []
            for entry in refl.get('listen', []):
                if isinstance(entry, (str, int)):
                    listen.append(parse_listen(str(entry)))
                else:
                    listen.append(ListenConfig(
                        host=entry.get('host'),
                        port=int(entry['port']),
                        name=entry.get('name')
                    ))
            reflector_config = ReflectorConfig(
                listen=listen,
                batch_size=int(refl.get('batch_size', DEFAULT_BATCH_SIZE)),
                max_datagram=int(refl.get('max_datagram', DEFAULT_MAX_DATAGRAM)),
                prefer_batch=bool(refl.get('prefer_batch', True)),
                feedback=bool(refl.get('feedback', False))
            )

            prb = config.get('probe') or {}
            port = prb.get('port')
            probe_config = ProbeConfig(
                host=prb.get('host'),
                port=int(port) if port is not None else None,
                protocol=prb.get('protocol'),
                source=prb.get('source'),
                connected=bool(prb.get('connected', True)),
                repeat=int(prb.get('repeat', 1)),
                batch_size=int(prb.get('batch_size', BATCH_SIZE)),
                timeout=float(prb.get('timeout', DEFAULT_TIMEOUT)),
                flood=bool(prb.get('flood', False))
            )

            metrics_port = int(config.get('metrics_port', 0) or 0)
        except ConfigError:
            raise
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise ConfigError(f"invalid configuration: {e}") from e

        return SystemConfig(
            reflector=reflector_config,
            probe=probe_config,
            metrics_port=metrics_port
        )

    @staticmethod
    def validate(config: SystemConfig) -> bool:
        """Validate configuration consistency"""

        refl = config.reflector
        for listen in refl.listen:
            if not 0 <= listen.port <= 65535:
                logger.error(f"Invalid port {listen.port} for {listen.label}")
                return False
        if refl.batch_size < 1:
            logger.error("reflector batch_size must be >= 1")
            return False
        if not 1 <= refl.max_datagram <= 65535:
            logger.error("reflector max_datagram must be in 1..65535")
            return False

        prb = config.probe
        if prb.repeat < 1 or prb.batch_size < 1:
            logger.error("probe repeat and batch_size must be >= 1")
            return False
        if prb.timeout <= 0:
            logger.error("probe timeout must be positive")
            return False
        if prb.port is not None and not 0 < prb.port <= 65535:
            logger.error(f"Invalid probe port {prb.port}")
            return False

        if not 0 <= config.metrics_port <= 65535:
            logger.error(f"Invalid metrics port {config.metrics_port}")
            return False

        logger.info("Configuration validation passed")
        return True
