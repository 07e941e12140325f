"""Инкрементальный поиск сертификатов crt.sh по диапазонам ID."""

__version__ = "0.1.0"
