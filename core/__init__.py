"""Сертификаты, конфигурация и сервер пересылки."""
