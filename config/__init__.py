"""config/__init__.py

Client configuration: schema/loader and hot reload.
"""
