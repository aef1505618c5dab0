"""Вспомогательные модули: логирование."""
