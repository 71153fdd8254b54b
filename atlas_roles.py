"""
Parsing of temporary-user role specifications.

Accepted forms are ``role``, ``role@database`` and comma-separated lists of
those, given either as one string or as a list of strings.
"""

from dataclasses import dataclass

from broker_errors import InvalidRoleSpec

DEFAULT_DATABASE = "admin"

# Operation classes the broker's callers choose from
SCHEMA_READ = "schema-read"
ROLE_MANAGEMENT = "role-management"


@dataclass(frozen=True)
class RoleBinding:
    role_name: str
    database_name: str

    def __str__(self):
        return f"{self.role_name}@{self.database_name}"

    def to_atlas(self):
        return {"roleName": self.role_name, "databaseName": self.database_name}


class RoleSet:
    """Ordered, duplicate-free, non-empty sequence of RoleBindings."""

    def __init__(self, bindings):
        unique = []
        for binding in bindings:
            if binding not in unique:
                unique.append(binding)
        if not unique:
            raise InvalidRoleSpec("A role set needs at least one role")
        self._bindings = tuple(unique)

    def __iter__(self):
        return iter(self._bindings)

    def __len__(self):
        return len(self._bindings)

    def __getitem__(self, index):
        return self._bindings[index]

    def __eq__(self, other):
        if not isinstance(other, RoleSet):
            return NotImplemented
        return self._bindings == other._bindings

    def __hash__(self):
        return hash(self._bindings)

    def __repr__(self):
        return f"RoleSet({self.serialize()!r})"

    def serialize(self):
        return ",".join(str(binding) for binding in self._bindings)

    def to_atlas(self):
        return [binding.to_atlas() for binding in self._bindings]


DEFAULT_SCHEMA_READ_ROLES = RoleSet([RoleBinding("readWriteAnyDatabase", DEFAULT_DATABASE)])
DEFAULT_ROLE_MANAGEMENT_ROLES = RoleSet([RoleBinding("atlasAdmin", DEFAULT_DATABASE)])

DEFAULT_ROLES = {
    SCHEMA_READ: DEFAULT_SCHEMA_READ_ROLES,
    ROLE_MANAGEMENT: DEFAULT_ROLE_MANAGEMENT_ROLES,
}


def parse_role(entry, target_database=None):
    """
    Parse a single ``role`` or ``role@database`` entry.

    Args:
        entry (str): The role entry
        target_database (str, optional): Database to scope a bare role to.
                                         Bare roles fall back to admin without it.

    Returns:
        RoleBinding: The normalized binding
    """
    text = entry.strip()
    if not text:
        raise InvalidRoleSpec(f"Invalid role '{entry}': role cannot be empty")

    if "@" in text:
        parts = text.split("@")
        if len(parts) != 2:
            raise InvalidRoleSpec(f"Invalid role '{entry}': expected 'role@database' or just 'role'")
        role_name, database_name = parts[0].strip(), parts[1].strip()
    else:
        role_name = text
        database_name = (target_database or "").strip() or DEFAULT_DATABASE

    if not role_name:
        raise InvalidRoleSpec(f"Invalid role '{entry}': role name cannot be empty")
    if not database_name:
        raise InvalidRoleSpec(f"Invalid role '{entry}': database name cannot be empty")
    return RoleBinding(role_name, database_name)


def parse_roles(spec, target_database=None, operation_class=SCHEMA_READ):
    """
    Normalize a role specification into a RoleSet.

    Args:
        spec (str | list | RoleSet | None): Role specification. Strings may hold several
                                            comma-separated entries.
        target_database (str, optional): Database bare roles are scoped to
        operation_class (str): Picks the default role set used when spec is empty

    Returns:
        RoleSet: Deduplicated role bindings in input order
    """
    if isinstance(spec, RoleSet):
        return spec
    if operation_class not in DEFAULT_ROLES:
        raise InvalidRoleSpec(f"Unknown operation class '{operation_class}'")

    if spec is None:
        entries = []
    elif isinstance(spec, str):
        entries = [spec]
    else:
        entries = list(spec)

    # Blank input as a whole means "use the defaults"
    if not any(str(entry).strip() for entry in entries):
        return DEFAULT_ROLES[operation_class]

    bindings = []
    for entry in entries:
        if not isinstance(entry, str):
            raise InvalidRoleSpec(f"Invalid role entry {entry!r}: expected a string")
        for part in entry.split(","):
            bindings.append(parse_role(part, target_database))
    return RoleSet(bindings)
