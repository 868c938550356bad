# facturacion/services/sri/signer.py
# -*- coding: utf-8 -*-
from __future__ import annotations

import base64
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.serialization import Encoding, pkcs12
from django.conf import settings
from django.utils import timezone
from lxml import etree

from facturacion.services.sri.errors import (
    CertificateError,
    CertificateExpired,
    CertificateNotFound,
    CertificateNotYetValid,
    InvalidPassphrase,
    MalformedDocument,
    SRIError,
)
from facturacion.services.sri.storage import PathLike, escribir_atomico
from facturacion.services.sri.xml_builder import SerializedDocument

logger = logging.getLogger("facturacion.sri")

# Namespaces requeridos
NAMESPACES = {
    "ds": "http://www.w3.org/2000/09/xmldsig#",
    "xades": "http://uri.etsi.org/01903/v1.3.2#",
}

ALG_C14N = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"
ALG_RSA_SHA1 = "http://www.w3.org/2000/09/xmldsig#rsa-sha1"
ALG_SHA1 = "http://www.w3.org/2000/09/xmldsig#sha1"
ALG_ENVELOPED = "http://www.w3.org/2000/09/xmldsig#enveloped-signature"
TYPE_SIGNED_PROPERTIES = "http://uri.etsi.org/01903#SignedProperties"


@dataclass(frozen=True)
class PKCS12Bundle:
    """
    Identidad de firma: contenido del .p12 + contraseña.
    """

    data: bytes
    password: str
    origen: str = "<memoria>"

    @classmethod
    def from_path(cls, path: PathLike, password: str) -> "PKCS12Bundle":
        cert_path = Path(path) if path else None
        if cert_path is None or not cert_path.is_file():
            raise CertificateNotFound(f"No se encuentra el archivo de certificado en: {path}")
        try:
            data = cert_path.read_bytes()
        except OSError as exc:
            logger.exception("Error leyendo archivo .p12: %s", exc)
            raise CertificateNotFound(f"Error leyendo archivo de certificado: {exc}") from exc
        return cls(data=data, password=password or "", origen=str(cert_path))

    @classmethod
    def from_settings(cls) -> "PKCS12Bundle":
        """Lee SRI_CERT_PATH / SRI_CERT_PASSWORD."""
        return cls.from_path(
            getattr(settings, "SRI_CERT_PATH", ""),
            getattr(settings, "SRI_CERT_PASSWORD", ""),
        )

    def load(self, now: Optional[datetime] = None) -> Tuple[object, x509.Certificate, List[x509.Certificate]]:
        """
        Descifra el PKCS12 y devuelve (private_key, certificate, additional_certs).

        Verifica la vigencia del certificado contra `now` (por defecto timezone.now()).
        """
        password = self.password.encode("utf-8") if self.password else None
        try:
            private_key, cert, additional_certs = pkcs12.load_key_and_certificates(
                self.data,
                password,
            )
        except ValueError as exc:
            logger.warning("No se pudo descifrar el PKCS12 %s: %s", self.origen, exc)
            raise InvalidPassphrase(
                f"Contraseña incorrecta o archivo PKCS12 inválido ({self.origen})."
            ) from exc

        if private_key is None or cert is None:
            raise CertificateError(
                "No se pudo extraer clave privada/certificado desde el archivo PKCS12."
            )

        now = now or timezone.now()
        cert_start = cert.not_valid_before_utc
        cert_end = cert.not_valid_after_utc

        if now < cert_start:
            logger.warning(
                "Certificado %s aún no vigente. Válido desde %s. Ahora: %s",
                self.origen,
                cert_start,
                now,
            )
            raise CertificateNotYetValid(f"Certificado no vigente hasta {cert_start}")
        if now > cert_end:
            logger.warning(
                "Certificado %s vencido. Válido: %s hasta %s. Ahora: %s",
                self.origen,
                cert_start,
                cert_end,
                now,
            )
            raise CertificateExpired(
                f"Certificado vencido. Válido desde {cert_start} hasta {cert_end}"
            )

        logger.debug("Certificado %s válido hasta %s", self.origen, cert_end)
        return private_key, cert, list(additional_certs or [])


@dataclass(frozen=True)
class SignedDocument:
    clave_acceso: str
    tipo: str
    xml: bytes

    @property
    def texto(self) -> str:
        return self.xml.decode("utf-8")

    def save(self, path: PathLike) -> Path:
        return escribir_atomico(path, self.xml)


def _canonicalize(element: etree._Element) -> bytes:
    """
    Canonicalización C14N INCLUSIVA (no exclusiva).
    """
    return etree.tostring(
        element,
        method="c14n",
        exclusive=False,
        with_comments=False,
    )


def _sha1_b64(data: bytes) -> str:
    return base64.b64encode(hashlib.sha1(data).digest()).decode("ascii")


def _cert_b64(cert: x509.Certificate) -> str:
    return base64.b64encode(cert.public_bytes(Encoding.DER)).decode("ascii")


def _create_xades_signed_properties(
    cert: x509.Certificate,
    signed_props_id: str,
    reference_id: str,
    signing_time: datetime,
) -> etree._Element:
    """
    Crea el nodo <xades:SignedProperties> requerido por XAdES-BES:
    SigningTime, SigningCertificate (digest SHA1 + IssuerSerial) y
    SignedDataObjectProperties/DataObjectFormat apuntando a la referencia
    del comprobante.
    """
    xades_ns = NAMESPACES["xades"]
    ds_ns = NAMESPACES["ds"]

    signed_props = etree.Element(
        f"{{{xades_ns}}}SignedProperties",
        Id=signed_props_id,
        nsmap={"xades": xades_ns, "ds": ds_ns},
    )

    signed_sig_props = etree.SubElement(signed_props, f"{{{xades_ns}}}SignedSignatureProperties")
    etree.SubElement(signed_sig_props, f"{{{xades_ns}}}SigningTime").text = signing_time.isoformat()

    signing_cert = etree.SubElement(signed_sig_props, f"{{{xades_ns}}}SigningCertificate")
    cert_elem = etree.SubElement(signing_cert, f"{{{xades_ns}}}Cert")

    cert_digest = etree.SubElement(cert_elem, f"{{{xades_ns}}}CertDigest")
    etree.SubElement(cert_digest, f"{{{ds_ns}}}DigestMethod", Algorithm=ALG_SHA1)
    etree.SubElement(cert_digest, f"{{{ds_ns}}}DigestValue").text = _sha1_b64(
        cert.public_bytes(Encoding.DER)
    )

    issuer_serial = etree.SubElement(cert_elem, f"{{{xades_ns}}}IssuerSerial")
    etree.SubElement(issuer_serial, f"{{{ds_ns}}}X509IssuerName").text = cert.issuer.rfc4514_string()
    etree.SubElement(issuer_serial, f"{{{ds_ns}}}X509SerialNumber").text = str(cert.serial_number)

    data_props = etree.SubElement(signed_props, f"{{{xades_ns}}}SignedDataObjectProperties")
    data_format = etree.SubElement(
        data_props,
        f"{{{xades_ns}}}DataObjectFormat",
        ObjectReference=f"#{reference_id}",
    )
    etree.SubElement(data_format, f"{{{xades_ns}}}Description").text = "contenido comprobante"
    etree.SubElement(data_format, f"{{{xades_ns}}}MimeType").text = "text/xml"

    return signed_props


def firmar_xml(
    xml: Union[bytes, str],
    identity: PKCS12Bundle,
    now: Optional[datetime] = None,
) -> bytes:
    """
    Firma un XML de comprobante electrónico usando XAdES-BES compatible SRI.

    - Algoritmos: C14N inclusivo, RSA-SHA1, digests SHA1.
    - Orden de hijos en <ds:Signature>: SignedInfo, SignatureValue, KeyInfo, Object.
    - Reference 1: #comprobante con transform enveloped-signature.
    - Reference 2: SignedProperties (Type=...#SignedProperties).
    - El digest de SignedProperties se calcula sobre el nodo tal como queda
      en el documento final (serializar + reparsear).
    """
    if not xml:
        raise MalformedDocument("El XML a firmar está vacío.")

    now = now or timezone.now()
    private_key, cert, additional_certs = identity.load(now=now)

    xml_bytes = xml.encode("utf-8") if isinstance(xml, str) else xml
    parser = etree.XMLParser(resolve_entities=False, no_network=True)
    try:
        root = etree.fromstring(xml_bytes, parser)
    except etree.XMLSyntaxError as exc:
        logger.warning("XML mal formado al intentar firmar: %s", exc)
        raise MalformedDocument(f"XML mal formado al intentar firmar: {exc}") from exc

    ds_ns = NAMESPACES["ds"]
    xades_ns = NAMESPACES["xades"]

    if root.find(f"{{{ds_ns}}}Signature") is not None:
        raise MalformedDocument("El XML ya contiene una firma ds:Signature.")

    node_id = root.get("id") or "comprobante"
    if root.get("id") is None:
        root.set("id", node_id)

    signature_id = f"Signature-{node_id}"
    reference_id = f"Reference-{node_id}"
    signed_props_id = f"{signature_id}-SignedProperties"

    try:
        # Digest del documento SIN firma (equivale al transform enveloped-signature)
        root_digest_b64 = _sha1_b64(_canonicalize(root))

        signature = etree.Element(
            f"{{{ds_ns}}}Signature",
            Id=signature_id,
            nsmap={"ds": ds_ns, "xades": xades_ns},
        )

        signed_info = etree.SubElement(signature, f"{{{ds_ns}}}SignedInfo")
        etree.SubElement(signed_info, f"{{{ds_ns}}}CanonicalizationMethod", Algorithm=ALG_C14N)
        etree.SubElement(signed_info, f"{{{ds_ns}}}SignatureMethod", Algorithm=ALG_RSA_SHA1)

        reference_root = etree.SubElement(
            signed_info,
            f"{{{ds_ns}}}Reference",
            Id=reference_id,
            URI=f"#{node_id}",
        )
        transforms_root = etree.SubElement(reference_root, f"{{{ds_ns}}}Transforms")
        etree.SubElement(transforms_root, f"{{{ds_ns}}}Transform", Algorithm=ALG_ENVELOPED)
        etree.SubElement(reference_root, f"{{{ds_ns}}}DigestMethod", Algorithm=ALG_SHA1)
        etree.SubElement(reference_root, f"{{{ds_ns}}}DigestValue").text = root_digest_b64

        signature_value_elem = etree.SubElement(signature, f"{{{ds_ns}}}SignatureValue")
        signature_value_elem.text = "PLACEHOLDER"

        key_info = etree.SubElement(signature, f"{{{ds_ns}}}KeyInfo")
        x509_data = etree.SubElement(key_info, f"{{{ds_ns}}}X509Data")
        for certificado in [cert, *additional_certs]:
            etree.SubElement(x509_data, f"{{{ds_ns}}}X509Certificate").text = _cert_b64(certificado)

        ds_object = etree.SubElement(signature, f"{{{ds_ns}}}Object")
        qualifying_props = etree.SubElement(
            ds_object,
            f"{{{xades_ns}}}QualifyingProperties",
            Target=f"#{signature_id}",
        )
        qualifying_props.append(
            _create_xades_signed_properties(cert, signed_props_id, reference_id, now)
        )

        root.append(signature)

        # Serializar + reparsear para un digest estable de SignedProperties
        root_reparsed = etree.fromstring(etree.tostring(root, encoding="UTF-8"))
        signed_props_in_doc = root_reparsed.find(
            f".//{{{xades_ns}}}SignedProperties[@Id='{signed_props_id}']"
        )
        if signed_props_in_doc is None:
            raise CertificateError(
                "No se encontró SignedProperties después de re-parsear el XML firmado."
            )
        props_digest_b64 = _sha1_b64(_canonicalize(signed_props_in_doc))
        logger.debug("Digest de SignedProperties (SHA1): %s", props_digest_b64)

        reference_props = etree.SubElement(
            signed_info,
            f"{{{ds_ns}}}Reference",
            Type=TYPE_SIGNED_PROPERTIES,
            URI=f"#{signed_props_id}",
        )
        etree.SubElement(reference_props, f"{{{ds_ns}}}DigestMethod", Algorithm=ALG_SHA1)
        etree.SubElement(reference_props, f"{{{ds_ns}}}DigestValue").text = props_digest_b64

        # SignatureValue: RSA-SHA1 sobre SignedInfo canonicalizado en contexto
        signature_value_bytes = private_key.sign(
            _canonicalize(signed_info),
            padding.PKCS1v15(),
            hashes.SHA1(),
        )
        signature_value_elem.text = base64.b64encode(signature_value_bytes).decode("ascii")

        xml_firmado = etree.tostring(
            root,
            encoding="UTF-8",
            xml_declaration=True,
            pretty_print=False,
        )
    except SRIError:
        raise
    except (TypeError, ValueError) as exc:
        logger.exception("Error al firmar XML con XAdES-BES: %s", exc)
        raise CertificateError(f"Error al firmar el XML: {exc}") from exc

    logger.info(
        "XML firmado con XAdES-BES (RSA-SHA1) con certificado %s (serie %s)",
        cert.subject.rfc4514_string(),
        cert.serial_number,
    )
    return xml_firmado


class Signer:
    """
    Firma SerializedDocument -> SignedDocument. No guarda estado entre llamadas.
    """

    def __init__(self, clock: Callable[[], datetime] = timezone.now):
        self.clock = clock

    def sign(self, document: SerializedDocument, identity: PKCS12Bundle) -> SignedDocument:
        xml_firmado = firmar_xml(document.xml, identity, now=self.clock())
        return SignedDocument(
            clave_acceso=document.clave_acceso,
            tipo=document.tipo,
            xml=xml_firmado,
        )
