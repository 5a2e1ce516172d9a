"""Admission checks for changes to a namespace's hierarchy configuration."""

from __future__ import annotations

import abc
import enum
import logging
import os
from dataclasses import dataclass, field

from hierarchyns.api import (
    HIERARCHY_CONFIGURATIONS,
    META_GROUP,
    MODE_PROPAGATE,
    SINGLETON,
    HierarchyConfiguration,
    UserInfo,
)
from hierarchyns.config import Config, FieldError
from hierarchyns.forest import Forest, Namespace, should_propagate

SERVING_PATH = "/validate-hnc-x-k8s-io-v1alpha2-hierarchyconfigurations"

_RESOURCE = f"{HIERARCHY_CONFIGURATIONS}.{META_GROUP}"
_KIND = f"HierarchyConfiguration.{META_GROUP}"

_log = logging.getLogger(__name__)


@dataclass
class Response:
    """The outcome of an admission check."""

    allowed: bool
    code: int = 0
    reason: str = ""
    message: str = ""


@dataclass
class Request:
    """The parts of an admission request the validator cares about."""

    hc: HierarchyConfiguration
    user: UserInfo | None = None


class ServerClient(abc.ABC):
    """Checks that must be made against the server after the forest is released."""

    @abc.abstractmethod
    def exists(self, name: str) -> bool:
        """Return True if the namespace exists on the server."""

    @abc.abstractmethod
    def is_admin(self, user: UserInfo | None, name: str) -> bool:
        """Return True if the user may update the hierarchy of the namespace."""


class CheckType(enum.Enum):
    AUTHZ = "authz"
    MISSING = "missing"


@dataclass(frozen=True)
class ServerCheck:
    """A check to run against the server once the forest lock is released."""

    name: str
    check_type: CheckType
    reason: str


def allow(message: str) -> Response:
    """An allowing response carrying a human-readable message."""
    return Response(allowed=True, code=0, message=message)


def is_hnc_service_account(user: UserInfo | None) -> bool:
    """True if the user belongs to the service accounts of the HNC namespace."""
    if user is None:
        return False
    namespace = os.environ.get("POD_NAMESPACE", "hnc-system")
    return f"system:serviceaccounts:{namespace}" in user.groups


def _deny_forbidden(err: str) -> Response:
    return Response(
        allowed=False,
        code=403,
        reason="Forbidden",
        message=f'{_RESOURCE} "{SINGLETON}" is forbidden: {err}',
    )


def _deny_conflict(err: str) -> Response:
    return Response(
        allowed=False,
        code=409,
        reason="Conflict",
        message=f'Operation cannot be fulfilled on {_RESOURCE} "{SINGLETON}": {err}',
    )


def _deny_invalid(name: str, errors: list[FieldError]) -> Response:
    if len(errors) == 1:
        detail = str(errors[0])
    else:
        detail = "[" + ", ".join(str(e) for e in errors) + "]"
    return Response(
        allowed=False,
        code=422,
        reason="Invalid",
        message=f'{_KIND} "{name}" is invalid: {detail}',
    )


def _deny_service_unavailable(message: str) -> Response:
    return Response(
        allowed=False, code=503, reason="ServiceUnavailable", message=message
    )


def _deny_internal_error(err: str) -> Response:
    return Response(
        allowed=False,
        code=500,
        reason="InternalError",
        message=f"Internal error occurred: {err}",
    )


def _deny_unauthorized(message: str) -> Response:
    return Response(allowed=False, code=401, reason="Unauthorized", message=message)


def _name(ns: Namespace | None) -> str:
    return ns.name if ns is not None else ""


def _not_reconciled(name: str) -> str:
    return (
        f'HNC has not reconciled namespace "{name}" yet - please try again in a '
        "few moments."
    )


@dataclass
class Validator:
    """Decides whether a hierarchy configuration may be created or updated.

    Checks are made against the in-memory forest, which is assumed up to date;
    authorization and existence checks then go to ``server`` if one is set.
    """

    forest: Forest
    config: Config = field(default_factory=Config)
    server: ServerClient | None = None

    def handle(self, request: Request) -> Response:
        hc = request.hc
        if is_hnc_service_account(request.user):
            return allow("HNC SA")

        why = self.config.why_unmanaged(hc.metadata.namespace)
        if why:
            return _deny_forbidden(
                f'namespace "{hc.metadata.namespace}" is not managed by HNC ({why}) '
                "and cannot be set as a child of another namespace"
            )
        why = self.config.why_unmanaged(hc.spec.parent)
        if why:
            return _deny_forbidden(
                f'namespace "{hc.spec.parent}" is not managed by HNC ({why}) '
                "and cannot be set as the parent of another namespace"
            )

        errors = self.config.validate_managed_labels(hc.spec.labels)
        errors += self.config.validate_managed_annotations(hc.spec.annotations)
        if errors:
            return _deny_invalid(hc.metadata.name, errors)

        checks, response = self._check_forest(hc)
        if not response.allowed:
            return self._logged(hc, response)
        return self._logged(hc, self._check_server(request.user, checks))

    def _logged(self, hc: HierarchyConfiguration, response: Response) -> Response:
        if response.allowed:
            _log.debug("Allowed %s: %s", hc.metadata.namespace, response.message)
        else:
            _log.info(
                "Denied %s: code=%d reason=%s message=%s",
                hc.metadata.namespace,
                response.code,
                response.reason,
                response.message,
            )
        return response

    def _check_forest(
        self, hc: HierarchyConfiguration
    ) -> tuple[list[ServerCheck], Response]:
        with self.forest:
            ns = self.forest.get(hc.metadata.namespace)
            cur_parent = ns.parent if ns is not None else None
            new_parent = self.forest.get(hc.spec.parent)

            response = self._check_ns(ns, hc.metadata.namespace)
            if not response.allowed:
                return [], response
            response = self._check_parent(ns, cur_parent, new_parent)
            if not response.allowed:
                return [], response
            return self.server_checks(cur_parent, new_parent), allow("")

    def _check_ns(self, ns: Namespace | None, name: str) -> Response:
        if ns is None or not ns.exists():
            return _deny_service_unavailable(_not_reconciled(name))
        halted_root = ns.get_halted_root()
        if halted_root and halted_root != ns.name:
            return _deny_forbidden(
                f'ancestor "{halted_root}" of namespace "{ns.name}" has a critical '
                "condition, which must be resolved before any changes can be made "
                "to the hierarchy configuration"
            )
        return allow("")

    def _check_parent(
        self,
        ns: Namespace,
        cur_parent: Namespace | None,
        new_parent: Namespace | None,
    ) -> Response:
        if ns.is_external() and new_parent is not None:
            return _deny_forbidden(
                f'namespace "{ns.name}" is managed by "{ns.manager}", not HNC, so it '
                "cannot have a parent in HNC"
            )
        if cur_parent is new_parent:
            return allow("parent unchanged")
        if ns.is_sub:
            return _deny_conflict(
                f'illegal parent: Cannot set the parent of "{ns.name}" to '
                f'"{_name(new_parent)}" because it\'s a subnamespace of '
                f'"{_name(cur_parent)}"'
            )
        if new_parent is not None and not new_parent.exists():
            return _deny_forbidden(
                f'requested parent "{new_parent.name}" does not exist'
            )
        reason = ns.can_set_parent(new_parent)
        if reason:
            return _deny_conflict(f"illegal parent: {reason}")
        conflicts = self._conflicting_objects(new_parent, ns)
        if conflicts:
            message = (
                "Cannot update hierarchy because it would overwrite the following "
                "object(s):\n  * "
                + "\n  * ".join(conflicts)
                + "\nTo fix this, please rename or remove the conflicting objects "
                "first."
            )
            return _deny_conflict(message)
        return allow("")

    def _conflicting_objects(
        self, new_parent: Namespace | None, ns: Namespace
    ) -> list[str]:
        if new_parent is None:
            return []
        return [
            conflict
            for syncer in self.forest.type_syncers()
            if syncer.mode == MODE_PROPAGATE
            for conflict in self._conflicting_objects_of_kind(
                syncer.kind, new_parent, ns
            )
        ]

    def _conflicting_objects_of_kind(
        self, kind: str, new_parent: Namespace, ns: Namespace
    ) -> list[str]:
        incoming: set[str] = set()
        for ns_name, obj_name in new_parent.ancestor_source_names(kind, ""):
            obj = self.forest.get(ns_name).get_source_object(kind, obj_name)
            try:
                propagates = obj is not None and should_propagate(obj)
            except ValueError:
                propagates = False
            if propagates:
                incoming.add(obj_name)

        return [
            f'Namespace "{dns}": {obj_name} ({kind})'
            for dns in [*ns.descendant_names(), ns.name]
            for obj_name in self.forest.get(dns).source_names(kind)
            if obj_name in incoming
        ]

    def server_checks(
        self, cur_parent: Namespace | None, new_parent: Namespace | None
    ) -> list[ServerCheck]:
        """The server checks needed to authorize moving from one parent to another.

        The user must administer the most recent common ancestor of the old and
        new parents if they share a tree, or else both the old root and the new
        parent. A missing current parent asks for a missing-check instead.
        """
        if cur_parent is new_parent:
            return []

        if cur_parent is None or not self.config.is_managed_namespace(
            cur_parent.name
        ):
            if new_parent is None:
                return []
            return [ServerCheck(new_parent.name, CheckType.AUTHZ, "proposed parent")]

        if not cur_parent.exists():
            return [
                ServerCheck(
                    cur_parent.name, CheckType.MISSING, "current missing parent"
                )
            ]

        cur_chain = cur_parent.ancestry_names()
        if new_parent is None:
            return [
                ServerCheck(cur_chain[0], CheckType.AUTHZ, "current root ancestor")
            ]

        new_chain = new_parent.ancestry_names()
        if cur_chain[0] != new_chain[0]:
            return [
                ServerCheck(cur_chain[0], CheckType.AUTHZ, "current root ancestor"),
                ServerCheck(new_parent.name, CheckType.AUTHZ, "proposed parent"),
            ]

        mrca = cur_chain[0]
        for cur_name, new_name in zip(cur_chain[1:], new_chain[1:]):
            if cur_name != new_name:
                break
            mrca = cur_name
        return [
            ServerCheck(
                mrca,
                CheckType.AUTHZ,
                f'most recent common ancestor of current parent "{cur_parent.name}" '
                f'and proposed parent "{new_parent.name}"',
            )
        ]

    def _check_server(
        self, user: UserInfo | None, checks: list[ServerCheck]
    ) -> Response:
        if self.server is None:
            return allow("")

        for check in checks:
            if check.check_type is CheckType.MISSING:
                _log.info("Checking existence of %s (%s)", check.name, check.reason)
                try:
                    exists = self.server.exists(check.name)
                except Exception as err:  # noqa: BLE001 - any server failure denies
                    return _deny_internal_error(
                        f'while checking existance for "{check.name}", the '
                        f"{check.reason}: {err}"
                    )
                if exists:
                    return _deny_service_unavailable(_not_reconciled(check.name))
            else:
                _log.info("Checking authz on %s (%s)", check.name, check.reason)
                try:
                    allowed = self.server.is_admin(user, check.name)
                except Exception as err:  # noqa: BLE001 - any server failure denies
                    return _deny_internal_error(
                        f'while checking authz for "{check.name}", the '
                        f"{check.reason}: {err}"
                    )
                if not allowed:
                    username = user.username if user is not None else ""
                    return _deny_unauthorized(
                        f"User {username} is not authorized to modify the subtree "
                        f"of {check.name}, which is the {check.reason}"
                    )
        return allow("")