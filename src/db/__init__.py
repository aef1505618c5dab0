"""Модуль базы данных.

- base.py — engine и фабрика сессий (читает settings)
- models_base.py — декларативная база без побочных эффектов
- models/ — кошельки, транзакции и журнал генераций
- repositories/ — доступ к данным

Тесты импортируют Base из models_base.py, чтобы не загружать .env.
"""
