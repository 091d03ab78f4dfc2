"""Утилиты для процессов и портов."""
