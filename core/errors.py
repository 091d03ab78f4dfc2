# core/errors.py
"""Иерархия исключений прокси.

Ошибки запуска (ConfigError, ProvisioningError, BindError) фатальны.
UpstreamError возникает в рамках одного запроса и наружу выходит только
как 5xx ответ или оборванное соединение с клиентом.
"""


class ProxyError(Exception):
    """Базовый класс ошибок прокси"""


class ConfigError(ProxyError):
    """Некорректный файл или значение конфигурации"""


class ProvisioningError(ProxyError):
    """Пары сертификат/ключ нет, и сгенерировать ее не удалось"""


class BindError(ProxyError):
    """Listener не смог занять порт или загрузить TLS контекст"""


class UpstreamError(ProxyError):
    """Транспортная ошибка при обмене с upstream"""
