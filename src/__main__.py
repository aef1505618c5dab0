"""Entry point для запуска через python -m src.

Использование:
    python -m src              # Production mode (без hot-reload)
    python -m src --dev        # Development mode (с hot-reload)
    python -m src --port 3000  # Другой порт
"""

import argparse

import uvicorn


def main() -> None:
    """Запустить API через uvicorn."""
    parser = argparse.ArgumentParser(
        description="GenLedger — маршрутизация AI-генераций и леджер кредитов",
    )
    parser.add_argument("--dev", action="store_true", help="Включить hot-reload")
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Хост для сервера (по умолчанию: 0.0.0.0)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Порт для сервера (по умолчанию: 8000)",
    )
    args = parser.parse_args()

    options: dict[str, object] = {"host": args.host, "port": args.port}
    if args.dev:
        options.update(
            reload=True,
            reload_includes=["src/**/*.py"],
            reload_excludes=[".venv/**", "data/**", "tests/**"],
        )
    uvicorn.run("src.main:app", **options)  # type: ignore[arg-type]


if __name__ == "__main__":
    main()
