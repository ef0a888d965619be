"""Form schema tree.

Form builder documents are arbitrarily nested component lists. They are
parsed into a small tagged tree (``FieldNode`` with a ``FieldKind``) so
that column derivation for exports is an exhaustive match over kinds
instead of ad hoc dictionary probing.

Data key paths follow how the builder stores submission data:

- layout components (panels, columns, tables, ...) add no prefix
- containers prefix their children with their key
- data grids hold lists of rows; their columns come from the data
- nested forms prefix their children with ``<key>.data``
- select boxes and surveys expand to one path per option / question
- buttons and static content hold no data
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping


class FieldKind(str, Enum):
    INPUT = "input"
    SELECTBOXES = "selectboxes"
    SURVEY = "survey"
    CONTAINER = "container"
    DATAGRID = "datagrid"
    NESTED_FORM = "nested_form"
    LAYOUT = "layout"
    CONTENT = "content"
    BUTTON = "button"


LAYOUT_TYPES = frozenset({"panel", "columns", "table", "well", "fieldset", "tabs", "simplepanel", "simplecols2", "simplecols3", "simplecols4", "simplefieldset", "simpletabs"})
CONTENT_TYPES = frozenset({"htmlelement", "content", "simplecontent", "simpleheading", "simpleparagraph"})
BUTTON_TYPES = frozenset({"button", "simplebuttonsubmit", "simplebuttonadvanced"})
OPTION_TYPES = frozenset({"selectboxes", "simplecheckboxes"})
CONTAINER_TYPES = frozenset({"container", "address", "tree"})
GRID_TYPES = frozenset({"datagrid", "editgrid", "datatable", "tagpad", "dynamicwizard"})

# Attributes copied into the node's attribute bag, per kind.
_KIND_ATTRIBUTES: dict[FieldKind, tuple[str, ...]] = {
    FieldKind.INPUT: ("inputType", "multiple", "validate", "defaultValue"),
    FieldKind.SELECTBOXES: ("inline",),
    FieldKind.SURVEY: ("values",),
    FieldKind.CONTAINER: (),
    FieldKind.DATAGRID: ("minLength", "maxLength"),
    FieldKind.NESTED_FORM: ("form", "revision"),
    FieldKind.LAYOUT: ("title", "legend"),
    FieldKind.CONTENT: ("html", "content"),
    FieldKind.BUTTON: ("action",),
}


@dataclass(frozen=True)
class FieldNode:
    kind: FieldKind
    key: str | None
    component_type: str
    label: str | None = None
    options: tuple[str, ...] = ()
    attributes: Mapping[str, Any] = field(default_factory=dict)
    children: tuple["FieldNode", ...] = ()


def classify(component: Mapping[str, Any]) -> FieldKind:
    ctype = str(component.get("type") or "").lower()
    has_children = bool(component.get("components") or component.get("columns") or component.get("rows"))

    if ctype in BUTTON_TYPES:
        return FieldKind.BUTTON
    if ctype in CONTENT_TYPES:
        return FieldKind.CONTENT
    if ctype == "survey":
        return FieldKind.SURVEY
    if ctype in OPTION_TYPES:
        return FieldKind.SELECTBOXES
    if ctype == "form":
        return FieldKind.NESTED_FORM
    if ctype in GRID_TYPES:
        return FieldKind.DATAGRID
    if ctype in CONTAINER_TYPES or component.get("tree"):
        return FieldKind.CONTAINER
    if ctype in LAYOUT_TYPES:
        return FieldKind.LAYOUT
    if has_children and not component.get("input"):
        return FieldKind.LAYOUT
    return FieldKind.INPUT


def _child_components(component: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    out: list[Mapping[str, Any]] = []
    for column in component.get("columns") or []:
        if isinstance(column, Mapping):
            out.extend(c for c in column.get("components") or [] if isinstance(c, Mapping))
    for row in component.get("rows") or []:
        cells = row if isinstance(row, list) else [row]
        for cell in cells:
            if isinstance(cell, Mapping):
                out.extend(c for c in cell.get("components") or [] if isinstance(c, Mapping))
    out.extend(c for c in component.get("components") or [] if isinstance(c, Mapping))
    return out


def _options(kind: FieldKind, component: Mapping[str, Any]) -> tuple[str, ...]:
    if kind == FieldKind.SURVEY:
        source = component.get("questions") or []
    elif kind == FieldKind.SELECTBOXES:
        source = component.get("values") or []
    else:
        return ()
    return tuple(str(o["value"]) for o in source if isinstance(o, Mapping) and o.get("value") not in (None, ""))


def parse_component(component: Mapping[str, Any]) -> FieldNode:
    kind = classify(component)
    keep = _KIND_ATTRIBUTES[kind]
    return FieldNode(
        kind=kind,
        key=str(component["key"]) if component.get("key") else None,
        component_type=str(component.get("type") or ""),
        label=component.get("label") or component.get("title"),
        options=_options(kind, component),
        attributes={k: component[k] for k in keep if k in component},
        children=tuple(parse_component(c) for c in _child_components(component)),
    )


def parse_schema(document: Mapping[str, Any]) -> list[FieldNode]:
    """Parse a builder document (``{"components": [...]}``) into nodes."""
    components = document.get("components") if isinstance(document, Mapping) else None
    return [parse_component(c) for c in components or [] if isinstance(c, Mapping)]


def _join(prefix: str, key: str) -> str:
    return f"{prefix}.{key}" if prefix else key


def _walk(nodes: Iterable[FieldNode], prefix: str, out: list[str], grid_children: bool = False) -> None:
    for node in nodes:
        if node.kind in (FieldKind.BUTTON, FieldKind.CONTENT):
            continue
        if node.kind == FieldKind.LAYOUT:
            _walk(node.children, prefix, out, grid_children)
            continue
        if node.key is None:
            _walk(node.children, prefix, out, grid_children)
            continue

        path = _join(prefix, node.key)
        if node.kind in (FieldKind.SELECTBOXES, FieldKind.SURVEY):
            if node.options:
                out.extend(_join(path, option) for option in node.options)
            else:
                out.append(path)
        elif node.kind == FieldKind.CONTAINER:
            _walk(node.children, path, out, grid_children)
        elif node.kind == FieldKind.DATAGRID:
            # Indexed grid columns (grid.0.name) are discovered from the data;
            # unwound rows use the bare child path (grid.name).
            if grid_children:
                _walk(node.children, path, out, grid_children)
        elif node.kind == FieldKind.NESTED_FORM:
            _walk(node.children, f"{path}.data", out, grid_children)
        else:
            out.append(path)


def field_paths(nodes: Iterable[FieldNode], *, dedupe: bool = True, grid_children: bool = False) -> list[str]:
    """Ordered data key paths for a parsed schema.

    Datagrid children are only listed with ``grid_children``, as
    ``grid.child`` without a row index.
    """
    out: list[str] = []
    _walk(nodes, "", out, grid_children)
    return list(dict.fromkeys(out)) if dedupe else out


