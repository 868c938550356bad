# facturacion/services/__init__.py
