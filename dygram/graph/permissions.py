"""
Context permission resolution.

Decides which context nodes a requesting node may read, write or store
into, using only the snapshot:

1. Outgoing edges from the requester to a context node grant access by
   whole-word label keyword before any ":": read; write/update/set;
   store/calculate. No keyword means read. "read: a,b" style lists
   restrict the grant to fields.
2. Incoming edges from a context node to the requester grant read.
3. Ancestors (nearest first) pass down READ-ONLY access to every context
   they can read. Write and store are never inherited, and any explicit
   edge on the requester replaces the inherited entry for that context.
"""

import logging
import re
from dataclasses import dataclass, replace

from dygram.graph.machine import MachineEdge, MachineSnapshot, is_context

logger = logging.getLogger(__name__)

# Keywords only count in the directive part of a label (before any ":")
READ_PATTERN = re.compile(r"\breads?\b", re.I)
WRITE_PATTERN = re.compile(r"\b(?:writes?|updates?|sets?)\b", re.I)
STORE_PATTERN = re.compile(r"\b(?:stores?|calculates?)\b", re.I)
FIELD_LIST_PATTERN = re.compile(r"(?:write|read|store|update|set):\s*([a-zA-Z0-9_,\s]+)", re.I)


@dataclass(frozen=True)
class ContextPermission:
    """Access granted to one context node."""

    can_read: bool = False
    can_write: bool = False
    can_store: bool = False
    fields: tuple[str, ...] | None = None  # None = every field
    inherited_from: str | None = None

    def allows_field(self, name: str) -> bool:
        return self.fields is None or name in self.fields

    def to_dict(self) -> dict:
        return {
            "canRead": self.can_read,
            "canWrite": self.can_write,
            "canStore": self.can_store,
            "fields": list(self.fields) if self.fields is not None else None,
            "inheritedFrom": self.inherited_from,
        }


@dataclass
class PermissionOptions:
    include_inbound_edges: bool = True
    include_store: bool = True
    include_inherited: bool = True
    log_grants: bool = False


def permissions_from_edge(edge: MachineEdge) -> ContextPermission:
    """Classify a single edge label into a permission."""
    text = edge.text
    directive = text.split(":", 1)[0]

    can_read = bool(READ_PATTERN.search(directive))
    can_write = bool(WRITE_PATTERN.search(directive))
    can_store = bool(STORE_PATTERN.search(directive))
    if not (can_read or can_write or can_store):
        can_read = True

    fields = None
    match = FIELD_LIST_PATTERN.search(text)
    if match:
        parsed = tuple(f.strip() for f in match.group(1).split(",") if f.strip())
        fields = parsed or None

    return ContextPermission(
        can_read=can_read, can_write=can_write, can_store=can_store, fields=fields
    )


def _direct_permissions(
    node_name: str,
    snapshot: MachineSnapshot,
    options: PermissionOptions,
) -> dict[str, ContextPermission]:
    access: dict[str, ContextPermission] = {}

    for edge in snapshot.get_outgoing_edges(node_name):
        target = snapshot.get_node(edge.target)
        if target is None or not is_context(target):
            continue
        permission = permissions_from_edge(edge)
        if not options.include_store:
            permission = replace(permission, can_store=False)
        access[edge.target] = permission

    if options.include_inbound_edges:
        for edge in snapshot.get_incoming_edges(node_name):
            source = snapshot.get_node(edge.source)
            if source is None or not is_context(source) or edge.source in access:
                continue
            access[edge.source] = ContextPermission(
                can_read=True, fields=permissions_from_edge(edge).fields
            )

    return access


def resolve_context_permissions(
    node_name: str,
    snapshot: MachineSnapshot,
    options: PermissionOptions | None = None,
) -> dict[str, ContextPermission]:
    """
    Resolve context access for a node.

    Args:
        node_name: The requesting node
        snapshot: Snapshot to resolve against
        options: Inbound-edge / store / inheritance switches

    Returns:
        Mapping of context node name -> ContextPermission
    """
    options = options or PermissionOptions()
    access = _direct_permissions(node_name, snapshot, options)

    if options.include_inherited:
        for ancestor in snapshot.ancestors_of(node_name):
            for context_name, granted in _direct_permissions(
                ancestor.name, snapshot, options
            ).items():
                if context_name in access or not granted.can_read:
                    continue
                access[context_name] = ContextPermission(
                    can_read=True,
                    fields=granted.fields,
                    inherited_from=ancestor.name,
                )

    if options.log_grants:
        for context_name, permission in access.items():
            logger.debug(
                f"🔐 Context access: {node_name} -> {context_name} "
                f"(read: {permission.can_read}, write: {permission.can_write}, "
                f"store: {permission.can_store}, "
                f"fields: {','.join(permission.fields) if permission.fields else 'all'})"
            )

    return access


def readable_fields(
    permissions: dict[str, ContextPermission],
) -> dict[str, list[str] | None]:
    """Context name -> readable field list (None = all), for condition scopes."""
    return {
        name: list(p.fields) if p.fields is not None else None
        for name, p in permissions.items()
        if p.can_read
    }
