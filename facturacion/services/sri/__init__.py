# facturacion/services/sri/__init__.py
"""
Servicios relacionados con SRI:

- nodes / xml_builder: modelo de nodos ordenados y builders de factura / nota de crédito.
- validator: validación de XML contra XSD oficial (si está instalado).
- signer: firma electrónica XAdES-BES.
- client: gateway SOAP (Recepción/Autorización) + reintentos y contingencia.
- storage: directorios por etapa y bloqueos por clave de acceso.
- workflow: orquestación completa (construir → firmar → enviar → autorizar).
"""
