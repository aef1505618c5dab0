"""Константы приложения."""

from pathlib import Path

# ==============================================================================
# ПУТИ К ФАЙЛАМ И ДИРЕКТОРИЯМ
# ==============================================================================

# Корень проекта (где лежит pyproject.toml)
PROJECT_ROOT = Path(__file__).parent.parent.parent

# Папка для данных (база, логи)
#
# В контейнере: /data, персистентное хранилище (абсолютный путь обязателен!)
# Локально: ./data, папка в корне проекта
_CONTAINER_DATA = Path("/data")
DATA_DIR = _CONTAINER_DATA if _CONTAINER_DATA.exists() else PROJECT_ROOT / "data"

# Создаём директорию если не существует (важно для первого запуска)
DATA_DIR.mkdir(parents=True, exist_ok=True)

# Файл конфигурации маршрутов и цен
CONFIG_FILE = PROJECT_ROOT / "config.yaml"

# ==============================================================================
# ЦЕНООБРАЗОВАНИЕ
# ==============================================================================

# Цена для модели без записи в прайсе (никогда не списываем "ничего")
DEFAULT_CREDITS_PER_UNIT = 5
