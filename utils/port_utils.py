# utils/port_utils.py
import socket
import psutil
import logging
from typing import Optional, Dict

logger = logging.getLogger(__name__)


def is_port_in_use(port: int, host: str = '0.0.0.0') -> bool:
    """Проверяет, занят ли порт на указанном адресе"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        # та же опция сокета, что и у aiohttp listener
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
            return False
        except OSError:
            return True


def get_process_using_port(port: int) -> Optional[Dict]:
    """Получает информацию о процессе, слушающем порт (если psutil его видит)"""
    try:
        for conn in psutil.net_connections(kind='inet'):
            try:
                if (conn.laddr and conn.laddr.port == port and
                        conn.status == psutil.CONN_LISTEN and conn.pid):

                    process = psutil.Process(conn.pid)
                    if process.is_running():
                        return {
                            'name': process.name(),
                            'pid': process.pid,
                            'username': process.username()
                        }
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
    except (psutil.AccessDenied, OSError) as e:
        logger.debug(f"Не удалось получить список соединений для порта {port}: {e}")
    return None


def describe_port_owner(port: int, host: str = '0.0.0.0') -> Optional[str]:
    """Описывает, кто держит порт; None, если порт свободен"""
    if not is_port_in_use(port, host):
        return None

    process_info = get_process_using_port(port)
    if process_info:
        return (
            f"port {port} is held by {process_info['name']} "
            f"(PID: {process_info['pid']}, user: {process_info['username']})"
        )
    return f"port {port} is held by an unknown process"
