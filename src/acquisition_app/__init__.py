# src/acquisition_app/__init__.py
