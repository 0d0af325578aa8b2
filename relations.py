"""
Parent/child/spouse integrity rules for members of one family tree.

A graph is a list of member dicts shaped like the rows returned by
store.tree_members: id, first_name, last_name, gender, and the outgoing
links parents (ids), children (ids) and spouse (id or None).
"""
from typing import Any, Dict, Iterable, List, Optional

LINK_KINDS = ("parent", "child", "spouse")
OPPOSITE_GENDER = {"male": "female", "female": "male"}


def _index(graph: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    return {str(m["id"]): m for m in graph}


def display_name(member: Dict[str, Any]) -> str:
    return f"{member.get('first_name') or ''} {member.get('last_name') or ''}".strip()


def siblings_of(graph: List[Dict[str, Any]], member_id: str) -> List[str]:
    """Ids of other members sharing at least one parent with member_id."""
    member = _index(graph).get(str(member_id))
    if not member or not member.get("parents"):
        return []
    parent_ids = {str(p) for p in member["parents"]}
    return [
        str(m["id"]) for m in graph
        if str(m["id"]) != str(member_id)
        and parent_ids.intersection(str(p) for p in (m.get("parents") or []))
    ]


def _siblings_of_any(graph, parent_ids) -> set:
    found = set()
    for pid in parent_ids:
        found.update(siblings_of(graph, pid))
    return found


def link_problems(graph: List[Dict[str, Any]], member_id: Optional[str], gender: Optional[str],
                  parents: List[str], children: List[str], spouse: Optional[str]) -> List[str]:
    """
    Check a proposed set of links for a member. member_id is None when the
    member is being created. Returns human readable problems; empty means ok.
    """
    problems = []
    by_id = _index(graph)
    parents = [str(p) for p in parents]
    children = [str(c) for c in children]
    spouse = str(spouse) if spouse else None
    me = str(member_id) if member_id else None

    linked = parents + children + ([spouse] if spouse else [])
    if me and me in linked:
        problems.append("A member cannot be linked to themselves")

    unknown = sorted({i for i in linked if i != me and i not in by_id})
    if unknown:
        problems.append("Related members must belong to the same family tree: " + ", ".join(unknown))

    both = [by_id[i] for i in parents if i in children and i in by_id]
    for m in both:
        problems.append(f"{display_name(m)} cannot be both a parent and a child")

    sibling_ids = _siblings_of_any(graph, [p for p in parents if p in by_id])
    for cid in children:
        if cid in sibling_ids and cid in by_id:
            problems.append(f"{display_name(by_id[cid])} is a sibling of a selected parent and cannot be a child")

    wanted = OPPOSITE_GENDER.get((gender or "").lower())
    if spouse and wanted and spouse in by_id:
        spouse_gender = (by_id[spouse].get("gender") or "").lower()
        if spouse_gender != wanted:
            problems.append(f"Spouse must be {wanted}")
    return problems


def candidates(graph: List[Dict[str, Any]], member_id: Optional[str], gender: Optional[str],
               parents: List[str], children: List[str]) -> Dict[str, List[Dict[str, Any]]]:
    """Pick lists for the member form, filtered by the same rules link_problems enforces."""
    me = str(member_id) if member_id else None
    parents = {str(p) for p in parents}
    children = {str(c) for c in children}
    others = [m for m in graph if str(m["id"]) != me]
    sibling_ids = _siblings_of_any(graph, parents)
    wanted = OPPOSITE_GENDER.get((gender or "").lower())

    def option(m):
        return {"id": str(m["id"]), "name": display_name(m)}

    return {
        "parents": [option(m) for m in others if str(m["id"]) not in children],
        "children": [
            option(m) for m in others
            if str(m["id"]) not in parents and str(m["id"]) not in sibling_ids
        ],
        "spouses": [
            option(m) for m in others
            if not wanted or (m.get("gender") or "").lower() == wanted
        ],
    }


def describe_dependents(rows: List[Dict[str, Any]]) -> str:
    """
    rows: members still pointing at the one being deleted, each with kind
    set to how they reference it (the deleted member is their parent, ...).
    """
    parts = [f"referenced as {r['kind']} of {display_name(r)}" for r in rows]
    return "This member cannot be deleted because it is " + ", ".join(parts) + ". Remove dependencies first."
