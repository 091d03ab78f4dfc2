import json
import logging
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Dict, Any, Optional
from urllib.parse import urlparse

from core.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = 'proxy.json'
MIN_KEY_BITS = 2048


@dataclass(frozen=True)
class ProxyConfig:
    """Настройки маршрута и процесса, неизменны на время жизни процесса"""
    host: str = '0.0.0.0'
    port: int = 3300
    upstream_url: str = 'http://localhost:8080'
    cert_path: str = 'cert.pem'
    key_path: str = 'key.pem'
    cert_days: int = 365
    cert_subject: str = '/CN=localhost'
    key_bits: int = 2048
    preserve_host: bool = False
    connect_timeout: float = 10.0
    read_timeout: float = 90.0
    keepalive_timeout: float = 75.0
    max_connections: int = 100
    openssl_path: str = 'openssl'
    log_level: str = 'INFO'
    log_file: Optional[str] = None

    def __post_init__(self):
        if not 0 <= int(self.port) < 65536:
            raise ConfigError(f"Invalid port: {self.port}")

        parsed = urlparse(self.upstream_url)
        if parsed.scheme != 'http' or not parsed.hostname:
            raise ConfigError(
                f"Upstream must be a plaintext http:// origin, got: {self.upstream_url!r}"
            )
        if parsed.path not in ('', '/') or parsed.query:
            raise ConfigError(f"Upstream must be an origin without path or query: {self.upstream_url!r}")

        if int(self.key_bits) < MIN_KEY_BITS:
            raise ConfigError(f"RSA key size must be at least {MIN_KEY_BITS} bits, got {self.key_bits}")
        if int(self.cert_days) <= 0:
            raise ConfigError(f"Certificate validity must be positive, got {self.cert_days}")
        if not isinstance(logging.getLevelName(str(self.log_level).upper()), int):
            raise ConfigError(f"Unknown log level: {self.log_level}")

    @property
    def upstream_origin(self) -> str:
        """URL upstream без завершающего слеша"""
        return self.upstream_url.rstrip('/')


class ConfigManager:
    def __init__(self, config_path=None):
        self.config_path = Path(config_path) if config_path else Path(DEFAULT_CONFIG_FILE)
        # явно указанный файл обязан существовать, файл по умолчанию - нет
        self.required = config_path is not None
        self.config = self._load_config()

    def _get_default_config(self) -> dict:
        """Возвращает конфигурацию по умолчанию"""
        defaults = asdict(ProxyConfig())
        return {
            'proxy': {
                'host': defaults['host'],
                'port': defaults['port'],
                'upstream_url': defaults['upstream_url'],
                'preserve_host': defaults['preserve_host'],
                'connect_timeout': defaults['connect_timeout'],
                'read_timeout': defaults['read_timeout'],
                'keepalive_timeout': defaults['keepalive_timeout'],
                'max_connections': defaults['max_connections'],
            },

            'certificate': {
                'cert_path': defaults['cert_path'],
                'key_path': defaults['key_path'],
                'days': defaults['cert_days'],
                'subject': defaults['cert_subject'],
                'key_bits': defaults['key_bits'],
                'openssl_path': defaults['openssl_path'],
            },

            'logging': {
                'level': defaults['log_level'],
                'file': defaults['log_file'],
            }
        }

    def _load_config(self) -> Dict[str, Any]:
        """Загружает конфигурацию из файла поверх значений по умолчанию"""
        default_config = self._get_default_config()

        if not self.config_path.exists():
            if self.required:
                raise ConfigError(f"Config file not found: {self.config_path}")
            return default_config

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                loaded_config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config {self.config_path}: {e}") from e

        if not isinstance(loaded_config, dict):
            raise ConfigError(f"Config {self.config_path} must contain a JSON object")

        logger.info(f"Конфигурация загружена из {self.config_path}")
        return self._deep_merge(default_config, loaded_config)

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """Рекурсивное слияние словарей"""
        result = base.copy()

        for key, value in update.items():
            if (key in result and
                    isinstance(result[key], dict) and
                    isinstance(value, dict)):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def get(self, key: str, default: Any = None) -> Any:
        """Получает значение по ключу (поддерживает точечную нотацию)"""
        value = self.config

        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def to_proxy_config(self, **overrides) -> ProxyConfig:
        """Собирает неизменяемый ProxyConfig; переопределения, отличные от None, важнее файла"""
        values = {
            'host': self.get('proxy.host'),
            'port': self.get('proxy.port'),
            'upstream_url': self.get('proxy.upstream_url'),
            'preserve_host': self.get('proxy.preserve_host'),
            'connect_timeout': self.get('proxy.connect_timeout'),
            'read_timeout': self.get('proxy.read_timeout'),
            'keepalive_timeout': self.get('proxy.keepalive_timeout'),
            'max_connections': self.get('proxy.max_connections'),
            'cert_path': self.get('certificate.cert_path'),
            'key_path': self.get('certificate.key_path'),
            'cert_days': self.get('certificate.days'),
            'cert_subject': self.get('certificate.subject'),
            'key_bits': self.get('certificate.key_bits'),
            'openssl_path': self.get('certificate.openssl_path'),
            'log_level': self.get('logging.level'),
            'log_file': self.get('logging.file'),
        }

        known = {f.name for f in fields(ProxyConfig)}
        for key, value in overrides.items():
            if key not in known:
                raise ConfigError(f"Unknown config option: {key}")
            if value is not None:
                values[key] = value

        try:
            values['port'] = int(values['port'])
            values['cert_days'] = int(values['cert_days'])
            values['key_bits'] = int(values['key_bits'])
            values['max_connections'] = int(values['max_connections'])
            values['connect_timeout'] = float(values['connect_timeout'])
            values['read_timeout'] = float(values['read_timeout'])
            values['keepalive_timeout'] = float(values['keepalive_timeout'])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric config value: {e}") from e

        return ProxyConfig(**values)


# Глобальный экземпляр конфигурации
_config_instance = None


def get_config(config_path=None) -> ConfigManager:
    """Получить глобальный экземпляр конфигурации"""
    global _config_instance
    if _config_instance is None or config_path is not None:
        _config_instance = ConfigManager(config_path)
    return _config_instance
