# facturacion/services/sri/storage.py
# -*- coding: utf-8 -*-
"""
Almacenamiento en disco de los comprobantes SRI por etapa.

Estructura (bajo settings.SRI_STORAGE_ROOT):

    generados/<clave>.xml      XML sin firma (y lotes: lote_<clave>.xml)
    firmados/<clave>.xml       XML firmado XAdES-BES
    enviados/<clave>.xml       copia de lo transmitido a Recepción
    autorizados/<clave>.xml    sobre <autorizacion> devuelto por el SRI
    contingencia/<clave>.xml   pendientes por falla de transporte

Todas las escrituras son atómicas (archivo temporal + os.replace) y los
directorios se crean en la primera escritura.
"""
from __future__ import annotations

import logging
import os
import tempfile
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterator, List, Optional, Union

from django.conf import settings
from django.core.cache import cache
from lxml import etree

logger = logging.getLogger("facturacion.sri")

PathLike = Union[str, os.PathLike]


class Etapa(str, Enum):
    GENERADOS = "generados"
    FIRMADOS = "firmados"
    ENVIADOS = "enviados"
    AUTORIZADOS = "autorizados"
    CONTINGENCIA = "contingencia"


def escribir_atomico(path: PathLike, data: bytes) -> Path:
    """
    Escribe `data` en `path` sin dejar nunca un archivo a medio escribir:
    se escribe un temporal en el mismo directorio y se renombra con os.replace.
    """
    destino = Path(path)
    destino.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(
        dir=str(destino.parent),
        prefix=f".{destino.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, destino)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise
    return destino


@dataclass(frozen=True)
class ComprobanteAutorizado:
    """
    Sobre de autorización persistido. Es lo que consume el RIDE.
    """

    path: Path
    estado: str
    numero_autorizacion: str
    fecha_autorizacion: str
    ambiente: str
    comprobante: str

    def as_dict(self) -> dict:
        return {
            "path": str(self.path),
            "estado": self.estado,
            "numeroAutorizacion": self.numero_autorizacion,
            "fechaAutorizacion": self.fecha_autorizacion,
            "ambiente": self.ambiente,
            "comprobante": self.comprobante,
        }


def serializar_autorizacion(
    estado: str,
    numero_autorizacion: str,
    fecha_autorizacion: str,
    ambiente: str,
    comprobante: str,
) -> bytes:
    """
    Arma el sobre <autorizacion> con el comprobante como CDATA.
    """
    root = etree.Element("autorizacion")
    etree.SubElement(root, "estado").text = estado or ""
    etree.SubElement(root, "numeroAutorizacion").text = numero_autorizacion or ""
    etree.SubElement(root, "fechaAutorizacion").text = fecha_autorizacion or ""
    etree.SubElement(root, "ambiente").text = ambiente or ""
    etree.SubElement(root, "comprobante").text = etree.CDATA(comprobante)
    return etree.tostring(
        root,
        encoding="UTF-8",
        xml_declaration=True,
        pretty_print=True,
    )


class DocumentStore:
    """
    Acceso a los directorios de etapa, indexados por clave de acceso.
    """

    def __init__(self, root: Optional[PathLike] = None):
        if root is None:
            root = getattr(
                settings,
                "SRI_STORAGE_ROOT",
                Path(getattr(settings, "BASE_DIR", ".")) / "comprobantes",
            )
        self.root = Path(root)

    def directorio(self, etapa: Etapa) -> Path:
        return self.root / Etapa(etapa).value

    def ruta(self, etapa: Etapa, clave_acceso: str, prefijo: str = "") -> Path:
        return self.directorio(etapa) / f"{prefijo}{clave_acceso}.xml"

    def guardar(self, etapa: Etapa, clave_acceso: str, data: bytes, prefijo: str = "") -> Path:
        path = escribir_atomico(self.ruta(etapa, clave_acceso, prefijo), data)
        logger.debug("Guardado %s en %s", clave_acceso, path)
        return path

    def leer(self, etapa: Etapa, clave_acceso: str) -> bytes:
        return self.ruta(etapa, clave_acceso).read_bytes()

    def existe(self, etapa: Etapa, clave_acceso: str) -> bool:
        return self.ruta(etapa, clave_acceso).is_file()

    def eliminar(self, etapa: Etapa, clave_acceso: str) -> bool:
        try:
            self.ruta(etapa, clave_acceso).unlink()
        except FileNotFoundError:
            return False
        return True

    def listar(self, etapa: Etapa) -> List[str]:
        """Claves presentes en una etapa, en orden estable (por nombre)."""
        directorio = self.directorio(etapa)
        if not directorio.is_dir():
            return []
        return sorted(
            p.stem
            for p in directorio.glob("*.xml")
            if p.is_file() and not p.name.startswith(".")
        )

    def leer_autorizado(self, clave_acceso: str) -> ComprobanteAutorizado:
        """
        Lee y parsea el sobre de autorización persistido.

        Lanza FileNotFoundError si la clave no está autorizada en disco.
        """
        path = self.ruta(Etapa.AUTORIZADOS, clave_acceso)
        parser = etree.XMLParser(resolve_entities=False, no_network=True)
        root = etree.fromstring(path.read_bytes(), parser)

        def _texto(tag: str) -> str:
            return (root.findtext(tag) or "").strip()

        return ComprobanteAutorizado(
            path=path,
            estado=_texto("estado"),
            numero_autorizacion=_texto("numeroAutorizacion"),
            fecha_autorizacion=_texto("fechaAutorizacion"),
            ambiente=_texto("ambiente"),
            comprobante=root.findtext("comprobante") or "",
        )


@contextmanager
def clave_lock(clave_acceso: str, timeout: Optional[int] = None) -> Iterator[bool]:
    """
    Lock por clave de acceso sobre el cache de Django (cache.add es atómico).

    Produce True si se obtuvo el lock; el llamador decide qué hacer si no.
    Solo libera el lock si sigue siendo el dueño (token propio).
    """
    if timeout is None:
        timeout = int(getattr(settings, "SRI_LOCK_TIMEOUT", 300))

    key = f"sri:lock:{clave_acceso}"
    token = uuid.uuid4().hex
    acquired = cache.add(key, token, timeout)
    if not acquired:
        logger.info("Clave %s bloqueada por otro proceso.", clave_acceso)
    try:
        yield acquired
    finally:
        if acquired and cache.get(key) == token:
            cache.delete(key)
