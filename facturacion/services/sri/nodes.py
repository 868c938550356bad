# facturacion/services/sri/nodes.py
# -*- coding: utf-8 -*-
"""
Modelo de nodos XML de un comprobante SRI.

Los XSD del SRI usan xs:sequence: el orden de los elementos es parte del
contrato. Por eso el comprobante se arma como un árbol de nodos inmutables
con un conjunto cerrado de tipos:

- Scalar:           <tag>valor</tag>
- AttributedScalar: <tag attr="...">valor</tag>   (ej. campoAdicional)
- Object:           <tag> hijos en orden </tag>
- RepeatedGroup:    <contenedor><item/><item/>...</contenedor>

`render` recorre el árbol y produce elementos lxml; es total sobre esos
cuatro tipos y falla con TypeError ante cualquier otra cosa.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Sequence, Tuple, Union

from lxml import etree


@dataclass(frozen=True)
class Scalar:
    name: str
    value: str


@dataclass(frozen=True)
class AttributedScalar:
    name: str
    value: str
    attrs: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class Object:
    name: str
    children: Tuple["Node", ...] = ()
    attrs: Tuple[Tuple[str, str], ...] = ()


@dataclass(frozen=True)
class RepeatedGroup:
    name: str
    items: Tuple["Node", ...] = ()


Node = Union[Scalar, AttributedScalar, Object, RepeatedGroup]

# Pares (tag XML, clave interna) en el orden exacto del XSD
Campos = Sequence[Tuple[str, str]]


def objeto(
    name: str,
    campos: Campos,
    valores: Mapping[str, object],
    attrs: Tuple[Tuple[str, str], ...] = (),
) -> Object:
    """
    Construye un Object tomando `valores` en el orden dado por `campos`.

    - None o "" se omiten (el XSD trata la presencia como dato).
    - str se envuelve en Scalar con el tag del campo.
    - Un Node se inserta tal cual (secciones anidadas ya armadas).
    """
    hijos = []
    for tag, clave in campos:
        valor = valores.get(clave)
        if valor is None or valor == "":
            continue
        if isinstance(valor, (Scalar, AttributedScalar, Object, RepeatedGroup)):
            hijos.append(valor)
        else:
            hijos.append(Scalar(tag, str(valor)))
    return Object(name, tuple(hijos), attrs)


def grupo(name: str, items: Sequence[Node]) -> Optional[RepeatedGroup]:
    """RepeatedGroup o None si no hay items (secciones opcionales vacías no se emiten)."""
    if not items:
        return None
    return RepeatedGroup(name, tuple(items))


def render(node: Node, parent: Optional[etree._Element] = None) -> etree._Element:
    if not isinstance(node, (Scalar, AttributedScalar, Object, RepeatedGroup)):
        raise TypeError(f"Tipo de nodo no soportado: {type(node)!r}")

    if parent is None:
        elem = etree.Element(node.name)
    else:
        elem = etree.SubElement(parent, node.name)

    if isinstance(node, Scalar):
        elem.text = node.value
    elif isinstance(node, AttributedScalar):
        for clave, valor in node.attrs:
            elem.set(clave, valor)
        elem.text = node.value
    elif isinstance(node, Object):
        for clave, valor in node.attrs:
            elem.set(clave, valor)
        for hijo in node.children:
            render(hijo, elem)
    else:
        for item in node.items:
            render(item, elem)

    return elem


def to_xml_bytes(root: Node) -> bytes:
    return etree.tostring(
        render(root),
        encoding="UTF-8",
        xml_declaration=True,
        pretty_print=False,
    )
