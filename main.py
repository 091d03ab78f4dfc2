# main.py
import sys
import argparse
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from core.errors import ProxyError

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level='INFO', log_file=None):
    """Настройка логирования в консоль и, если задан файл, в ротируемый лог"""
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handlers = [console_handler]

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        # Ротация логов: максимум 5MB, 5 backup файлов
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=5 * 1024 * 1024,  # 5MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handlers.append(file_handler)

    logging.basicConfig(
        level=getattr(logging, str(level).upper()),
        handlers=handlers,
        force=True
    )


def setup_exception_handler():
    """Логирует необработанные исключения перед завершением"""

    def exception_handler(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return

        logger.critical("Unhandled exception:",
                        exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_handler


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="p2p-tls-proxy",
        description="HTTPS reverse proxy that forwards everything to a local plaintext backend.",
        epilog=(
            "A self-signed certificate for CN=localhost is generated with openssl\n"
            "on first start if the certificate or key file is missing.\n\n"
            "Example:\n"
            "  p2p-tls-proxy\n"
            "  p2p-tls-proxy --port 8443 --upstream http://127.0.0.1:9000"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        default=None,
        help="JSON config file (default: proxy.json if present)",
    )
    parser.add_argument("--host", default=None, help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="TLS port (default: 3300)")
    parser.add_argument(
        "--upstream",
        dest="upstream_url",
        default=None,
        help="Plaintext upstream origin (default: http://localhost:8080)",
    )
    parser.add_argument("--cert", dest="cert_path", default=None, help="Certificate file (default: cert.pem)")
    parser.add_argument("--key", dest="key_path", default=None, help="Private key file (default: key.pem)")
    parser.add_argument(
        "--preserve-host",
        action="store_const",
        const=True,
        default=None,
        help="Forward the client's Host header instead of the upstream's",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    parser.add_argument("--log-file", default=None, help="Also log to this rotating file")
    return parser


def load_config(args):
    from core.config_manager import get_config

    overrides = {
        'host': args.host,
        'port': args.port,
        'upstream_url': args.upstream_url,
        'cert_path': args.cert_path,
        'key_path': args.key_path,
        'preserve_host': args.preserve_host,
        'log_level': args.log_level,
        'log_file': args.log_file,
    }
    return get_config(args.config).to_proxy_config(**overrides)


def main(argv=None):
    """Готовит сертификат и запускает прокси. Возвращает код выхода."""
    args = build_arg_parser().parse_args(argv)

    setup_logging(args.log_level or 'INFO', args.log_file)
    setup_exception_handler()

    from core.certificate_manager import CertificateManager
    from core.proxy_manager import serve

    try:
        config = load_config(args)
        setup_logging(config.log_level, config.log_file)

        certificate_manager = CertificateManager.from_config(config)
        certificate_manager.ensure_certificates_exist()

        days_remaining = certificate_manager.get_certificate_days_remaining()
        if certificate_manager.is_certificate_expired():
            logger.warning(f"⚠️ Certificate {config.cert_path} has expired, clients will reject it")
        elif days_remaining >= 0:
            logger.info(f"🔐 Certificate {config.cert_path} valid for {days_remaining} more days")

        serve(config)

    except ProxyError as e:
        logger.critical(f"❌ {type(e).__name__}: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("🛑 Прервано пользователем")

    return 0


def run():
    sys.exit(main())


if __name__ == "__main__":
    run()
