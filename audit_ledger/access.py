"""
Minimum-necessary access policy for protected health information.
"""

from typing import Dict, FrozenSet, Optional

OWN_DATA_ONLY = "own-data-only"

PERMISSIONS: Dict[str, FrozenSet[str]] = {
    "ADMIN": frozenset({"patients", "doctors", "appointments", "billing", "audit"}),
    "DOCTOR": frozenset({"patients", "appointments", "billing"}),
    "NURSE": frozenset({"patients", "appointments"}),
    "RECEPTIONIST": frozenset({"appointments", "billing"}),
    "PATIENT": frozenset({OWN_DATA_ONLY}),
}

_PATH_CATEGORIES = (
    ("/patients", "patients"),
    ("/doctors", "doctors"),
    ("/appointments", "appointments"),
    ("/billing", "billing"),
    ("/auth", "authentication"),
)

_METHOD_ACCESS_TYPES = {
    "GET": "READ",
    "POST": "CREATE",
    "PUT": "UPDATE",
    "PATCH": "UPDATE",
    "DELETE": "DELETE",
}


def check_access(actor_role: Optional[str], resource_category: str) -> bool:
    """
    Whether a role may touch a resource category.

    Unknown roles are denied. PATIENT only matches the `own-data-only`
    category; resolving ownership is the caller's job.
    """
    allowed = PERMISSIONS.get((actor_role or "").upper())
    if not allowed:
        return False
    return resource_category.lower() in allowed


def resource_category_for_path(path: str) -> str:
    for fragment, category in _PATH_CATEGORIES:
        if fragment in path:
            return category
    return "unknown"


def access_type_for_method(method: str) -> str:
    return _METHOD_ACCESS_TYPES.get(method.upper(), "UNKNOWN")
