# certificate_manager.py
import logging
from pathlib import Path
from datetime import datetime, timezone
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from core.errors import ProvisioningError
from utils.process_manager import run_command, CommandError

logger = logging.getLogger(__name__)


class CertificateManager:
    def __init__(self, key_path='key.pem', cert_path='cert.pem', days=365,
                 subject='/CN=localhost', key_bits=2048, openssl_path='openssl'):
        self.key_path = Path(key_path)
        self.cert_path = Path(cert_path)
        self.days = days
        self.subject = subject
        self.key_bits = key_bits
        self.openssl_path = openssl_path

    @classmethod
    def from_config(cls, config):
        return cls(
            key_path=config.key_path,
            cert_path=config.cert_path,
            days=config.cert_days,
            subject=config.cert_subject,
            key_bits=config.key_bits,
            openssl_path=config.openssl_path,
        )

    def _openssl_command(self) -> list:
        return [
            self.openssl_path, "req",
            "-x509",
            "-newkey", f"rsa:{self.key_bits}",
            "-nodes",
            "-keyout", str(self.key_path),
            "-out", str(self.cert_path),
            "-days", str(self.days),
            "-subj", self.subject,
        ]

    def generate_self_signed_certificate(self):
        """Генерирует самоподписанный сертификат и ключ через openssl"""
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        self.cert_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            run_command(self._openssl_command())
        except CommandError as e:
            raise ProvisioningError(f"Failed to generate TLS certs: {e}") from e

        if not self.check_certificates_exist():
            raise ProvisioningError(
                f"Certificate generation reported success but "
                f"{self.cert_path} / {self.key_path} are missing"
            )

        self.verify_certificate_pair()

        logger.info(f"✅ Сертификат создан: {self.cert_path}")
        logger.info(f"✅ Приватный ключ создан: {self.key_path}")

    def check_certificates_exist(self) -> bool:
        """Проверяет наличие сертификата и ключа"""
        return self.cert_path.exists() and self.key_path.exists()

    def ensure_certificates_exist(self):
        """
        Проверяет наличие пары сертификат/ключ и генерирует ее при необходимости.

        Существующие файлы используются как есть, содержимое не проверяется.

        Raises:
            ProvisioningError: генерация не удалась или openssl недоступен
        """
        if self.check_certificates_exist():
            logger.debug(f"Используется существующий сертификат {self.cert_path}")
            return

        logger.warning("TLS certs not found, generating self-signed cert...")
        self.generate_self_signed_certificate()

    def _load_certificate(self) -> x509.Certificate:
        with open(self.cert_path, "rb") as cert_file:
            return x509.load_pem_x509_certificate(cert_file.read())

    def verify_certificate_pair(self):
        """Проверяет, что приватный ключ соответствует сертификату"""
        try:
            cert = self._load_certificate()
            with open(self.key_path, "rb") as key_file:
                private_key = serialization.load_pem_private_key(key_file.read(), password=None)
        except (OSError, ValueError, TypeError) as e:
            raise ProvisioningError(f"Cannot load certificate pair: {e}") from e

        pem = serialization.Encoding.PEM
        spki = serialization.PublicFormat.SubjectPublicKeyInfo
        if cert.public_key().public_bytes(pem, spki) != private_key.public_key().public_bytes(pem, spki):
            raise ProvisioningError(
                f"Private key {self.key_path} does not match certificate {self.cert_path}"
            )

    def get_certificate_info(self) -> dict:
        """Получает информацию о сертификате"""
        if not self.cert_path.exists():
            return {"error": "Certificate not found"}

        try:
            cert = self._load_certificate()
        except (OSError, ValueError) as e:
            return {"error": f"Cannot read certificate: {e}"}

        return {
            "subject": cert.subject.rfc4514_string(),
            "issuer": cert.issuer.rfc4514_string(),
            "not_valid_before_utc": cert.not_valid_before_utc.isoformat(),
            "not_valid_after_utc": cert.not_valid_after_utc.isoformat(),
            "serial_number": str(cert.serial_number),
            "version": cert.version.name,
        }

    def is_certificate_expired(self) -> bool:
        """True, если срок действия сертификата уже истек; False и для нечитаемого файла"""
        try:
            cert = self._load_certificate()
        except (OSError, ValueError) as e:
            logger.error(f"Не удалось проверить срок действия сертификата: {e}")
            return False

        return cert.not_valid_after_utc <= datetime.now(timezone.utc)

    def get_certificate_days_remaining(self) -> int:
        """Полных дней до истечения срока: 0 в последние сутки и после истечения, -1 если файл не читается"""
        if not self.cert_path.exists():
            return -1

        try:
            cert = self._load_certificate()
        except (OSError, ValueError) as e:
            logger.error(f"Не удалось проверить срок действия сертификата: {e}")
            return -1

        remaining = cert.not_valid_after_utc - datetime.now(timezone.utc)
        return max(0, remaining.days)


def ensure_certificate(key_path, cert_path):
    """Генерирует самоподписанный сертификат для localhost, если нет хотя бы одного файла"""
    CertificateManager(key_path=key_path, cert_path=cert_path).ensure_certificates_exist()
