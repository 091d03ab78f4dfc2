# utils/process_manager.py
import subprocess
import logging
from typing import List, Optional

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Внешняя команда не запустилась или завершилась с ошибкой"""

    def __init__(self, message, returncode=None, output=''):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


def _log_output(name: str, text: str, level: int):
    for line in text.splitlines():
        if line.strip():
            logger.log(level, f"[{name}] {line}")


def run_command(cmd: List[str], timeout: Optional[float] = 60) -> subprocess.CompletedProcess:
    """
    Запускает внешнюю команду один раз и ждет ее завершения.

    stdout/stderr перехватываются и пишутся в лог, чтобы были видны
    диагностические сообщения утилиты. Pipes закрываются при любом исходе.

    Raises:
        CommandError: команда не запустилась, превысила таймаут или
            завершилась с ненулевым кодом
    """
    name = cmd[0]
    logger.debug(f"Запуск: {' '.join(cmd)}")

    try:
        result = subprocess.run(
            cmd,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError as e:
        raise CommandError(f"{name} not found: {e}") from e
    except PermissionError as e:
        raise CommandError(f"{name} is not executable: {e}") from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(f"{name} did not finish within {timeout}s") from e
    except OSError as e:
        raise CommandError(f"Cannot launch {name}: {e}") from e

    _log_output(name, result.stdout, logging.INFO)
    # openssl пишет прогресс в stderr даже при успехе
    _log_output(name, result.stderr, logging.INFO if result.returncode == 0 else logging.ERROR)

    if result.returncode != 0:
        raise CommandError(
            f"{name} exited with code {result.returncode}",
            returncode=result.returncode,
            output=result.stderr,
        )

    return result
