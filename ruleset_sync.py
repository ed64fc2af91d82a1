#!/usr/bin/env python3
"""GitHub ruleset synchronization bot.

Keeps managed organization rulesets in line with local JSON definitions that
were exported from another organization, translating the organization-local
IDs of repositories, teams and custom repository roles on the way.
"""

from __future__ import annotations

import argparse
import copy
import hashlib
import hmac
import json
import logging
import os
import sys
import time
from collections import Counter
from collections.abc import Callable, Iterable, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from enum import Enum
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any

import jwt
import requests
import yaml

GITHUB_API_URL = "https://api.github.com"
GITHUB_API_VERSION = "2022-11-28"
USER_AGENT = "github-ruleset-sync/0.1.0"
REQUEST_TIMEOUT = 30

DEFAULT_RULESETS_DIR = "rulesets"
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8080

WORKFLOWS_RULE_TYPE = "workflows"
# Actor IDs 1-5 are built-in roles (e.g. organization admin) shared by every organization.
RESERVED_ACTOR_ID_MAX = 5
SUPPORTED_EVENT_ACTIONS = frozenset({"created", "edited", "deleted"})


logger = logging.getLogger(__name__)


class RulesetSyncError(RuntimeError):
    """Base class for every error raised by the synchronization bot."""


class ConfigError(RulesetSyncError):
    """Raised when the bot configuration is missing or invalid."""


class ReadError(RulesetSyncError):
    """Raised when a ruleset definition or event file cannot be read."""


class DecodeError(RulesetSyncError):
    """Raised when a document, rule or workflow payload is malformed."""


class NotFoundInSource(RulesetSyncError):
    """Raised when an entity ID does not exist in the source organization."""

    def __init__(self, kind: str, key: int | str) -> None:
        super().__init__(f"{kind} {key!r} not found in source organization")
        self.kind = kind
        self.key = key


class NotFoundInTarget(RulesetSyncError):
    """Raised when an entity name does not exist in the target organization."""

    def __init__(self, kind: str, key: int | str) -> None:
        super().__init__(f"{kind} {key!r} not found in target organization")
        self.kind = kind
        self.key = key


class AuthError(RulesetSyncError):
    """Raised when an app JWT or installation token cannot be obtained."""


class UpstreamAPIError(RulesetSyncError):
    """Raised when the GitHub API returns an error response or cannot be reached."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"GitHub API error {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class RulesetProcessingError(RulesetSyncError):
    """Raised when a ruleset document cannot be translated as a whole."""


class UnhandledActorType(RulesetSyncError):
    """Records a bypass actor whose type is not translated. Never raised."""

    def __init__(self, actor_type: str, actor_id: int | None) -> None:
        super().__init__(f"Unhandled actor type: {actor_type}")
        self.actor_type = actor_type
        self.actor_id = actor_id


READ_ONLY_RULESET_FIELDS: set[str] = {
    "id",
    "source",
    "source_type",
    "node_id",
    "_links",
    "created_at",
    "updated_at",
    "current_user_can_bypass",
}

DOCUMENT_FIELDS = frozenset({"name", "enforcement", "source", "rules", "bypass_actors"})


@dataclass
class WorkflowRef:
    """A required workflow: repository ID, file path and ref."""

    repository_id: int
    path: str
    ref: str | None = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> WorkflowRef:
        match data:
            case {
                "repository_id": int() as repository_id,
                "path": str() as path,
                **rest,
            } if not isinstance(repository_id, bool):
                ref = rest.pop("ref", None)
                if ref is not None and not isinstance(ref, str):
                    raise DecodeError(f"Workflow '{path}' has a non-string ref: {ref!r}")
                return cls(repository_id=repository_id, path=path, ref=ref, extra=rest)
            case _:
                raise DecodeError(f"Malformed workflow entry: {data!r}")

    def to_dict(self) -> dict:
        data = {"repository_id": self.repository_id, "path": self.path}
        if self.ref is not None:
            data["ref"] = self.ref
        data.update(self.extra)
        return data


@dataclass
class Workflows:
    """Decoded parameters of a ``workflows`` rule."""

    workflows: list[WorkflowRef] = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    @classmethod
    def decode(cls, parameters: Any) -> Workflows:
        if isinstance(parameters, str | bytes | bytearray):
            try:
                parameters = json.loads(parameters)
            except json.JSONDecodeError as exc:
                raise DecodeError(f"Failed to unmarshal workflow parameters: {exc}") from exc
        match parameters:
            case {"workflows": list() as entries, **rest}:
                return cls(
                    workflows=[WorkflowRef.from_dict(entry) for entry in entries],
                    extra=rest,
                )
            case _:
                raise DecodeError(
                    "Workflow rule parameters must be an object with a 'workflows' list"
                )

    def encode(self) -> dict:
        return {
            **self.extra,
            "workflows": [workflow.to_dict() for workflow in self.workflows],
        }


@dataclass
class Rule:
    """A ruleset rule, tagged by ``type``.

    Only ``workflows`` rules are ever decoded. The parameters of every other
    rule type are kept as the very object that was loaded.
    """

    type: str
    parameters: Any = None
    extra: dict = field(default_factory=dict)
    # Tells an explicit "parameters": null apart from an absent key.
    has_parameters: bool = False

    @classmethod
    def from_dict(cls, data: Any) -> Rule:
        match data:
            case {"type": str() as rule_type, **rest}:
                has_parameters = "parameters" in rest
                parameters = rest.pop("parameters", None)
                return cls(
                    type=rule_type,
                    parameters=parameters,
                    extra=rest,
                    has_parameters=has_parameters,
                )
            case _:
                raise DecodeError(f"Malformed rule: {data!r}")

    def workflows(self) -> Workflows:
        return Workflows.decode(self.parameters)

    def to_dict(self) -> dict:
        data = {"type": self.type, **self.extra}
        if self.has_parameters or self.parameters is not None:
            data["parameters"] = self.parameters
        return data


@dataclass
class BypassActor:
    actor_id: int | None
    actor_type: str
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> BypassActor:
        match data:
            case {"actor_type": str() as actor_type, **rest}:
                actor_id = rest.pop("actor_id", None)
                if actor_id is not None and (
                    not isinstance(actor_id, int) or isinstance(actor_id, bool)
                ):
                    raise DecodeError(f"Bypass actor has a non-integer actor_id: {actor_id!r}")
                return cls(actor_id=actor_id, actor_type=actor_type, extra=rest)
            case _:
                raise DecodeError(f"Malformed bypass actor: {data!r}")

    def to_dict(self) -> dict:
        return {"actor_id": self.actor_id, "actor_type": self.actor_type, **self.extra}


@dataclass
class RulesetDocument:
    """A ruleset definition as exported from the source organization."""

    name: str
    source: str
    enforcement: str | None = None
    rules: list[Rule] = field(default_factory=list)
    bypass_actors: list[BypassActor] = field(default_factory=list)
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> RulesetDocument:
        if not isinstance(data, dict):
            raise DecodeError("Ruleset definition must be a JSON object")
        name = data.get("name")
        if not isinstance(name, str) or not name:
            raise DecodeError("Ruleset definition is missing a 'name'")
        source = data.get("source")
        if not isinstance(source, str) or not source:
            raise DecodeError(f"Ruleset '{name}' is missing a 'source' organization")
        rules = data.get("rules")
        rules = [] if rules is None else rules
        bypass_actors = data.get("bypass_actors")
        bypass_actors = [] if bypass_actors is None else bypass_actors
        if not isinstance(rules, list) or not isinstance(bypass_actors, list):
            raise DecodeError(f"Ruleset '{name}' must hold 'rules' and 'bypass_actors' lists")
        return cls(
            name=name,
            source=source,
            enforcement=data.get("enforcement"),
            rules=[Rule.from_dict(rule) for rule in rules],
            bypass_actors=[BypassActor.from_dict(actor) for actor in bypass_actors],
            extra={k: v for k, v in data.items() if k not in DOCUMENT_FIELDS},
        )

    @property
    def source_org(self) -> str:
        # Repository rulesets carry an "owner/repo" source.
        return self.source.split("/", 1)[0]

    def to_dict(self) -> dict:
        data: dict = {"name": self.name}
        if self.enforcement is not None:
            data["enforcement"] = self.enforcement
        data.update(self.extra)
        data["source"] = self.source
        data["rules"] = [rule.to_dict() for rule in self.rules]
        data["bypass_actors"] = [actor.to_dict() for actor in self.bypass_actors]
        return data


@dataclass
class RulesetEvent:
    """The parts of a ``repository_ruleset`` webhook payload the bot relies on."""

    action: str
    organization: str
    ruleset_name: str
    ruleset_enforcement: str | None = None
    previous_name: str | None = None
    previous_enforcement: str | None = None
    sender_login: str | None = None
    sender_type: str | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> RulesetEvent:
        match payload:
            case {
                "action": str() as action,
                "organization": {"login": str() as organization},
                "ruleset": {"name": str() as ruleset_name} as ruleset,
            }:
                pass
            case _:
                raise DecodeError(
                    "Ruleset event must carry 'action', 'organization.login' and 'ruleset.name'"
                )
        changes = payload.get("changes") or {}
        sender = payload.get("sender") or {}
        return cls(
            action=action,
            organization=organization,
            ruleset_name=ruleset_name,
            ruleset_enforcement=ruleset.get("enforcement"),
            previous_name=(changes.get("name") or {}).get("from"),
            previous_enforcement=(changes.get("enforcement") or {}).get("from"),
            sender_login=sender.get("login"),
            sender_type=sender.get("type"),
        )


def _normalize_for_comparison(
    obj: dict | list | str | int | bool | None,
) -> dict | list | str | int | bool | None:
    """Recursively normalize a structure for comparison by sorting lists and dicts."""
    if isinstance(obj, dict):
        return {k: _normalize_for_comparison(v) for k, v in sorted(obj.items())}
    if isinstance(obj, list):
        normalized = [_normalize_for_comparison(item) for item in obj]
        return sorted(normalized, key=lambda x: json.dumps(x, sort_keys=True))
    return obj


def rulesets_are_equal(existing: dict, new_payload: dict) -> bool:
    """Compare a live ruleset with a payload, looking only at the payload's keys."""
    for key, new_value in new_payload.items():
        existing_value = existing.get(key)
        if _normalize_for_comparison(existing_value) != _normalize_for_comparison(new_value):
            logger.debug(
                "Ruleset difference in key '%s': existing=%s, new=%s",
                key,
                json.dumps(existing_value, indent=2),
                json.dumps(new_value, indent=2),
            )
            return False
    return True


class GitHubClient:
    """Thin wrapper around the GitHub REST API calls the bot needs."""

    def __init__(self, token: str, *, api_url: str = GITHUB_API_URL) -> None:
        self.api_url = api_url.rstrip("/")
        self.session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": GITHUB_API_VERSION,
                "User-Agent": USER_AGENT,
            }
        )

    def close(self) -> None:
        self.session.close()

    # Organization directory

    def get_repo_name(self, repo_id: int) -> str | None:
        logger.debug("Fetching repository with id=%s", repo_id)
        repo = self._request("GET", f"/repositories/{repo_id}", allow_missing=True)
        return repo["name"] if repo else None

    def get_repo_id(self, org: str, repo_name: str) -> int | None:
        logger.debug("Fetching repository '%s/%s'", org, repo_name)
        repo = self._request("GET", f"/repos/{org}/{repo_name}", allow_missing=True)
        return repo["id"] if repo else None

    def get_org_id(self, org: str) -> int:
        logger.debug("Fetching organization '%s'", org)
        return self._request("GET", f"/orgs/{org}")["id"]

    def get_team_by_id(self, org_id: int, team_id: int) -> dict | None:
        logger.debug("Fetching team id=%s in organization id=%s", team_id, org_id)
        return self._request(
            "GET", f"/organizations/{org_id}/team/{team_id}", allow_missing=True
        )

    def get_team_by_name(self, org: str, slug: str) -> dict | None:
        logger.debug("Fetching team '%s' in organization '%s'", slug, org)
        return self._request("GET", f"/orgs/{org}/teams/{slug}", allow_missing=True)

    def get_custom_repo_roles(self, org: str) -> list[dict]:
        logger.debug("Fetching custom repository roles for organization '%s'", org)
        body = self._request("GET", f"/orgs/{org}/custom-repository-roles")
        return body.get("custom_roles", [])

    # App installations

    def get_org_installation(self, org: str) -> dict:
        return self._request("GET", f"/orgs/{org}/installation")

    def create_installation_token(self, installation_id: int) -> str:
        body = self._request("POST", f"/app/installations/{installation_id}/access_tokens")
        return body["token"]

    # Organization rulesets

    def find_ruleset(self, org: str, name: str) -> dict | None:
        logger.debug("Searching for ruleset '%s' in organization '%s'", name, org)
        ruleset = next(
            (
                r
                for r in self._paginate(f"/orgs/{org}/rulesets", params={"per_page": 100})
                if r.get("name") == name
            ),
            None,
        )
        if ruleset:
            logger.debug(
                "Found existing ruleset '%s' (id=%s) in organization '%s'",
                name,
                ruleset.get("id"),
                org,
            )
        else:
            logger.debug("Ruleset '%s' not found in organization '%s'", name, org)
        return ruleset

    def get_ruleset(self, org: str, ruleset_id: int) -> dict:
        logger.debug("Fetching ruleset id=%s from organization '%s'", ruleset_id, org)
        return self._request("GET", f"/orgs/{org}/rulesets/{ruleset_id}")

    def create_ruleset(self, org: str, payload: dict) -> None:
        logger.info("Creating ruleset '%s' in organization '%s'", payload.get("name"), org)
        self._request("POST", f"/orgs/{org}/rulesets", json_body=payload)

    def update_ruleset(self, org: str, ruleset_id: int, payload: dict) -> None:
        logger.info(
            "Updating ruleset '%s' (id=%s) in organization '%s'",
            payload.get("name"),
            ruleset_id,
            org,
        )
        self._request("PUT", f"/orgs/{org}/rulesets/{ruleset_id}", json_body=payload)

    def upsert_ruleset(self, org: str, definition: dict, dry_run: bool = False) -> str:
        payload = self._prepare_ruleset_payload(definition)
        existing_summary = self.find_ruleset(org, payload.get("name", ""))

        if existing_summary:
            existing = self.get_ruleset(org, existing_summary["id"])
            if rulesets_are_equal(existing, payload):
                logger.info(
                    "Ruleset '%s' (id=%s) in organization '%s' is already up-to-date",
                    payload.get("name"),
                    existing_summary["id"],
                    org,
                )
                return "unchanged"

        match (bool(existing_summary), dry_run):
            case (True, True):
                logger.info(
                    "[dry-run] Would update ruleset '%s' (id=%s) in organization '%s'",
                    payload.get("name"),
                    existing_summary["id"],
                    org,
                )
                action = "dry_run_update"
            case (True, False):
                self.update_ruleset(org, existing_summary["id"], payload)
                action = "updated"
            case (False, True):
                logger.info(
                    "[dry-run] Would create ruleset '%s' in organization '%s'",
                    payload.get("name"),
                    org,
                )
                action = "dry_run_create"
            case (False, False):
                self.create_ruleset(org, payload)
                action = "created"

        if dry_run:
            logger.debug(
                "[dry-run] Ruleset payload for '%s': %s", org, json.dumps(payload, indent=2)
            )
        return action

    @staticmethod
    def _prepare_ruleset_payload(definition: dict) -> dict:
        return {
            key: copy.deepcopy(value)
            for key, value in definition.items()
            if key not in READ_ONLY_RULESET_FIELDS
        }

    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict | None = None,
        json_body: dict | None = None,
        allow_missing: bool = False,
    ) -> Any:
        url = endpoint if endpoint.startswith("http") else f"{self.api_url}{endpoint}"
        response = self._send(method, url, params=params, json=json_body)
        if response.status_code == 404 and allow_missing:
            return None
        if response.status_code >= 400:
            raise UpstreamAPIError(response.status_code, self._format_error(response))
        if response.status_code == 204:
            return None
        return self._decode(response)

    def _paginate(self, endpoint: str, *, params: dict | None = None) -> Iterable:
        url = f"{self.api_url}{endpoint}"
        next_params = params
        while url:
            response = self._send("GET", url, params=next_params)
            if response.status_code >= 400:
                raise UpstreamAPIError(response.status_code, self._format_error(response))
            yield from self._decode(response)
            url = response.links.get("next", {}).get("url")
            next_params = None

    def _send(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        try:
            return self.session.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.RequestException as exc:
            raise UpstreamAPIError(0, f"{method} {url} failed: {exc}") from exc

    @staticmethod
    def _decode(response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamAPIError(response.status_code, f"invalid JSON body: {exc}") from exc

    @staticmethod
    def _format_error(response: requests.Response) -> str:
        try:
            return json.dumps(response.json())
        except ValueError:
            return response.text


class InstallationBroker:
    """Mints GitHub App credentials and installation-scoped clients."""

    def __init__(
        self,
        app_id: str,
        private_key: str,
        *,
        api_url: str = GITHUB_API_URL,
        client_factory: Callable[..., GitHubClient] = GitHubClient,
    ) -> None:
        self.app_id = app_id
        self.private_key = private_key
        self.api_url = api_url
        self.client_factory = client_factory

    def app_jwt(self, now: float | None = None) -> str:
        issued_at = int(time.time() if now is None else now)
        # Backdated to tolerate clock drift; GitHub caps lifetime at ten minutes.
        claims = {"iat": issued_at - 60, "exp": issued_at + 540, "iss": str(self.app_id)}
        try:
            return jwt.encode(claims, self.private_key, algorithm="RS256")
        except (jwt.PyJWTError, ValueError, TypeError) as exc:
            raise AuthError(f"Failed to create JWT for app {self.app_id}: {exc}") from exc

    def new_auth_client(self) -> GitHubClient:
        return self.client_factory(self.app_jwt(), api_url=self.api_url)

    def get_org_installation_id(self, org: str) -> int:
        client = self.new_auth_client()
        try:
            installation = client.get_org_installation(org)
        except UpstreamAPIError as exc:
            raise AuthError(f"Failed to get installation for the app in '{org}': {exc}") from exc
        finally:
            client.close()
        logger.debug("App installation for '%s' is id=%s", org, installation["id"])
        return installation["id"]

    def new_installation_client(self, installation_id: int) -> GitHubClient:
        client = self.new_auth_client()
        try:
            token = client.create_installation_token(installation_id)
        except UpstreamAPIError as exc:
            raise AuthError(
                f"Failed to create installation token for installation {installation_id}: {exc}"
            ) from exc
        finally:
            client.close()
        return self.client_factory(token, api_url=self.api_url)

    @contextmanager
    def installation_client(self, org: str) -> Iterator[GitHubClient]:
        """Yield a client authorized for ``org`` and close it afterwards."""
        client = self.new_installation_client(self.get_org_installation_id(org))
        try:
            yield client
        finally:
            client.close()


class NotFoundPolicy(Enum):
    HARD = "hard"
    SOFT = "soft"


@dataclass(frozen=True)
class ResolvedIdentity:
    name: str
    target_id: int


def translate(
    id_in_source: int,
    lookup_by_id: Callable[[int], str | None],
    lookup_by_name: Callable[[str], int | None],
    *,
    kind: str,
    policy: NotFoundPolicy = NotFoundPolicy.HARD,
) -> ResolvedIdentity | None:
    """Translate an organization-local ID by hopping through its stable name.

    ``lookup_by_id`` reads the source organization and ``lookup_by_name`` the
    target organization; either returns ``None`` when nothing matches. A miss
    in the source always raises. A miss in the target raises under
    ``NotFoundPolicy.HARD`` and returns ``None`` under ``NotFoundPolicy.SOFT``.
    """
    name = lookup_by_id(id_in_source)
    if name is None:
        raise NotFoundInSource(kind, id_in_source)
    target_id = lookup_by_name(name)
    if target_id is None:
        if policy is NotFoundPolicy.SOFT:
            logger.warning(
                "%s '%s' (source id=%s) does not exist in the target organization; leaving it unchanged",
                kind.capitalize(),
                name,
                id_in_source,
            )
            return None
        raise NotFoundInTarget(kind, name)
    logger.debug("Translated %s '%s': %s -> %s", kind, name, id_in_source, target_id)
    return ResolvedIdentity(name=name, target_id=target_id)


def _lookup(items: Iterable[dict], match_key: str, value: Any, result_key: str) -> Any:
    return next((item.get(result_key) for item in items if item.get(match_key) == value), None)


SourceClients = Callable[[str], AbstractContextManager[GitHubClient]]


class EntityResolver:
    """Maps entity IDs from a source organization onto ``target_org``.

    ``source_clients`` opens a client authorized for a source organization;
    one is opened per team or role resolution and closed right after.
    """

    def __init__(
        self, target_client: GitHubClient, target_org: str, source_clients: SourceClients
    ) -> None:
        self.target_client = target_client
        self.target_org = target_org
        self.source_clients = source_clients

    def resolve_repository(self, repo_id: int) -> int:
        identity = translate(
            repo_id,
            self.target_client.get_repo_name,
            lambda name: self.target_client.get_repo_id(self.target_org, name),
            kind="repository",
        )
        return identity.target_id

    def resolve_team(self, source_org: str, team_id: int) -> int:
        with self.source_clients(source_org) as source_client:
            org_id = source_client.get_org_id(source_org)
            identity = translate(
                team_id,
                lambda tid: (source_client.get_team_by_id(org_id, tid) or {}).get("slug"),
                lambda slug: (
                    self.target_client.get_team_by_name(self.target_org, slug) or {}
                ).get("id"),
                kind="team",
            )
        return identity.target_id

    def resolve_custom_role(self, source_org: str, role_id: int) -> int | None:
        with self.source_clients(source_org) as source_client:
            source_roles = source_client.get_custom_repo_roles(source_org)
        identity = translate(
            role_id,
            lambda rid: _lookup(source_roles, "id", rid, "name"),
            lambda name: _lookup(
                self.target_client.get_custom_repo_roles(self.target_org), "name", name, "id"
            ),
            kind="custom repository role",
            policy=NotFoundPolicy.SOFT,
        )
        return identity.target_id if identity else None


def rewrite_rules(document: RulesetDocument, resolver: EntityResolver) -> None:
    """Point every ``workflows`` rule at the target organization's repositories."""
    for rule in document.rules:
        if rule.type != WORKFLOWS_RULE_TYPE:
            continue
        try:
            workflows = rule.workflows()
        except DecodeError as exc:
            raise RulesetProcessingError(
                f"Failed to process workflows in ruleset '{document.name}': {exc}"
            ) from exc
        for workflow in workflows.workflows:
            try:
                workflow.repository_id = resolver.resolve_repository(workflow.repository_id)
            except RulesetSyncError as exc:
                raise RulesetProcessingError(
                    f"Failed to process workflows in ruleset '{document.name}': "
                    f"repository ID {workflow.repository_id}: {exc}"
                ) from exc
        rule.parameters = workflows.encode()


def should_process_bypass_actor(actor: BypassActor) -> bool:
    return bool(actor.actor_id) and actor.actor_id > RESERVED_ACTOR_ID_MAX


def rewrite_bypass_actors(
    document: RulesetDocument, resolver: EntityResolver
) -> list[UnhandledActorType]:
    """Translate team and custom role bypass actors in place.

    Returns the actors that were skipped because their type is unknown.
    """
    unhandled: list[UnhandledActorType] = []
    for actor in document.bypass_actors:
        if not should_process_bypass_actor(actor):
            continue
        match actor.actor_type:
            case "Team":
                try:
                    actor.actor_id = resolver.resolve_team(document.source_org, actor.actor_id)
                except RulesetSyncError as exc:
                    raise RulesetProcessingError(
                        f"Failed to process team bypass actor with id {actor.actor_id} "
                        f"in ruleset '{document.name}': {exc}"
                    ) from exc
            case "RepositoryRole":
                try:
                    role_id = resolver.resolve_custom_role(document.source_org, actor.actor_id)
                except RulesetSyncError as exc:
                    raise RulesetProcessingError(
                        f"Failed to process repository role bypass actor with id {actor.actor_id} "
                        f"in ruleset '{document.name}': {exc}"
                    ) from exc
                if role_id is not None:
                    actor.actor_id = role_id
            case "Integration":
                continue
            case _:
                logger.warning("Unhandled actor type: %s", actor.actor_type)
                unhandled.append(UnhandledActorType(actor.actor_type, actor.actor_id))
    return unhandled


def process_ruleset(document: RulesetDocument, resolver: EntityResolver) -> RulesetDocument:
    """Return a copy of ``document`` translated into the resolver's target organization."""
    logger.info(
        "Translating ruleset '%s' from '%s' to '%s'",
        document.name,
        document.source_org,
        resolver.target_org,
    )
    translated = copy.deepcopy(document)
    rewrite_rules(translated, resolver)
    unhandled = rewrite_bypass_actors(translated, resolver)
    if unhandled:
        logger.info(
            "Ruleset '%s' kept %d bypass actor(s) of unhandled types unchanged",
            document.name,
            len(unhandled),
        )
    return translated


def _read_json(path: Path) -> Any:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ReadError(f"Failed to read '{path}': {exc}") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"Failed to unmarshal '{path}': {exc}") from exc


def load_candidates(rulesets_dir: str | Path) -> list[RulesetDocument]:
    """Load every ``*.json`` ruleset definition in ``rulesets_dir``."""
    rulesets_path = Path(rulesets_dir)
    if not rulesets_path.is_dir():
        raise ReadError(f"Rulesets directory '{rulesets_dir}' does not exist")

    documents = []
    for ruleset_file in sorted(rulesets_path.glob("*.json")):
        logger.debug("Loading ruleset file '%s'", ruleset_file.name)
        data = _read_json(ruleset_file)
        try:
            documents.append(RulesetDocument.from_dict(data))
        except DecodeError as exc:
            raise DecodeError(f"Invalid ruleset file '{ruleset_file.name}': {exc}") from exc
    logger.info("Loaded %d ruleset definitions from '%s'", len(documents), rulesets_dir)
    return documents


def is_managed(event: RulesetEvent, document: RulesetDocument) -> bool:
    if document.name != event.ruleset_name:
        logger.debug(
            "Ruleset '%s' in the organization '%s' is not managed by definition '%s'",
            event.ruleset_name,
            event.organization,
            document.name,
        )
        return False
    logger.info(
        "Ruleset '%s' in the organization '%s' is managed by this app",
        event.ruleset_name,
        event.organization,
    )
    return True


@dataclass
class Settings:
    app_id: str
    private_key: str
    webhook_secret: str = ""
    rulesets_dir: str = DEFAULT_RULESETS_DIR
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    dry_run: bool = False
    ignore_bot_senders: bool = True
    api_url: str = GITHUB_API_URL


def handle_ruleset_event(
    event: RulesetEvent, settings: Settings, broker: InstallationBroker
) -> Counter:
    """Restore every managed ruleset matching ``event`` in the event's organization."""
    summary: Counter = Counter()
    if event.action not in SUPPORTED_EVENT_ACTIONS:
        logger.info("Ignoring ruleset event with action '%s'", event.action)
        return summary
    if settings.ignore_bot_senders and event.sender_type == "Bot":
        logger.info(
            "Ignoring ruleset event for '%s' sent by bot '%s'",
            event.ruleset_name,
            event.sender_login,
        )
        return summary
    if event.previous_name:
        logger.info(
            "Ruleset '%s' was renamed from '%s'", event.ruleset_name, event.previous_name
        )
    if event.previous_enforcement:
        logger.info(
            "Ruleset '%s' enforcement changed from '%s' to '%s'",
            event.ruleset_name,
            event.previous_enforcement,
            event.ruleset_enforcement,
        )

    managed = [
        document
        for document in load_candidates(settings.rulesets_dir)
        if is_managed(event, document)
    ]
    if not managed:
        logger.info("No managed ruleset matches '%s'", event.ruleset_name)
        return summary

    with broker.installation_client(event.organization) as client:
        resolver = EntityResolver(client, event.organization, broker.installation_client)
        for document in managed:
            translated = process_ruleset(document, resolver)
            action = client.upsert_ruleset(
                event.organization, translated.to_dict(), dry_run=settings.dry_run
            )
            summary[action] += 1

    _log_summary(summary, event.organization, settings.dry_run)
    return summary


def render_rulesets(
    org: str, settings: Settings, broker: InstallationBroker, name: str | None = None
) -> list[dict]:
    """Translate the ruleset definitions for ``org`` without applying them."""
    documents = [
        document
        for document in load_candidates(settings.rulesets_dir)
        if name is None or document.name == name
    ]
    with broker.installation_client(org) as client:
        resolver = EntityResolver(client, org, broker.installation_client)
        return [process_ruleset(document, resolver).to_dict() for document in documents]


def _log_summary(summary: Counter, org: str, dry_run: bool) -> None:
    mode = "dry-run" if dry_run else "execution"
    logger.info("===== Ruleset sync %s summary for '%s' =====", mode, org)
    actions = {
        "created": "Rulesets created",
        "updated": "Rulesets updated",
        "unchanged": "Rulesets already up-to-date",
        "dry_run_create": "Rulesets to create",
        "dry_run_update": "Rulesets to update",
    }
    for key, label in actions.items():
        if summary.get(key):
            logger.info("%s: %d", label, summary[key])


def verify_signature(secret: str, body: bytes, signature_header: str | None) -> bool:
    if not secret or not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header)


def handle_webhook(
    settings: Settings,
    broker: InstallationBroker,
    event_name: str | None,
    signature_header: str | None,
    body: bytes,
) -> tuple[HTTPStatus, str]:
    """Answer one webhook delivery with an HTTP status and a short message."""
    if not verify_signature(settings.webhook_secret, body, signature_header):
        logger.warning("Rejected webhook delivery with an invalid signature")
        return HTTPStatus.UNAUTHORIZED, "invalid signature"

    match event_name:
        case "ping":
            return HTTPStatus.OK, "pong"
        case "repository_ruleset":
            pass
        case _:
            logger.debug("Ignoring webhook event '%s'", event_name)
            return HTTPStatus.ACCEPTED, f"ignored event {event_name}"

    try:
        event = RulesetEvent.from_payload(json.loads(body))
    except (json.JSONDecodeError, UnicodeDecodeError, DecodeError) as exc:
        logger.warning("Rejected malformed ruleset event: %s", exc)
        return HTTPStatus.BAD_REQUEST, f"malformed event: {exc}"

    try:
        summary = handle_ruleset_event(event, settings, broker)
    except RulesetSyncError as exc:
        logger.error(
            "Failed to handle ruleset event for '%s' in '%s': %s",
            event.ruleset_name,
            event.organization,
            exc,
        )
        return HTTPStatus.INTERNAL_SERVER_ERROR, str(exc)
    return HTTPStatus.OK, json.dumps(dict(summary), sort_keys=True)


def parse_content_length(value: str | None) -> int | None:
    """Return the body length, or ``None`` unless it is a plain non-negative integer."""
    if value is None:
        return 0
    value = value.strip()
    if not value.isascii() or not value.isdigit():
        return None
    return int(value)


class WebhookHandler(BaseHTTPRequestHandler):
    server: WebhookServer

    def do_POST(self) -> None:  # noqa: N802
        length = parse_content_length(self.headers.get("Content-Length"))
        if length is None:
            logger.warning("Rejected webhook delivery with an invalid Content-Length")
            # The body was never read, so the connection cannot be reused.
            self.close_connection = True
            self._respond(HTTPStatus.BAD_REQUEST, "invalid Content-Length")
            return
        body = self.rfile.read(length)
        status, message = handle_webhook(
            self.server.settings,
            self.server.broker,
            self.headers.get("X-GitHub-Event"),
            self.headers.get("X-Hub-Signature-256"),
            body,
        )
        self._respond(status, message)

    def _respond(self, status: HTTPStatus, message: str) -> None:
        payload = message.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("%s - %s", self.address_string(), format % args)


class WebhookServer(HTTPServer):
    def __init__(self, settings: Settings, broker: InstallationBroker) -> None:
        super().__init__((settings.host, settings.port), WebhookHandler)
        self.settings = settings
        self.broker = broker


def serve(settings: Settings, broker: InstallationBroker) -> None:
    if not settings.webhook_secret:
        raise ConfigError("A webhook secret is required to serve webhooks")
    server = WebhookServer(settings, broker)
    logger.info("Listening for webhooks on %s:%d", settings.host, settings.port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        logger.info("Shutting down webhook server")
    finally:
        server.server_close()


def load_config_file(path: str | None) -> dict:
    if not path:
        return {}
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Failed to read config file '{path}': {exc}") from exc
    try:
        config = yaml.safe_load(text) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file '{path}': {exc}") from exc
    if not isinstance(config, dict):
        raise ConfigError(f"Config file '{path}' must contain a mapping")
    return config


def _env_flag(value: str) -> bool:
    return value.strip().lower() not in {"0", "false", "no", ""}


def load_settings(args: argparse.Namespace, environ: dict | None = None) -> Settings:
    """Build settings from CLI flags, then environment, then the config file."""
    environ = os.environ if environ is None else environ
    config = load_config_file(getattr(args, "config", None))

    def pick(arg_name: str, env_name: str, default: Any = None) -> Any:
        value = getattr(args, arg_name, None)
        if value is not None:
            return value
        if environ.get(env_name):
            return environ[env_name]
        return config.get(arg_name, default)

    app_id = pick("app_id", "GITHUB_APP_ID")
    if not app_id:
        raise ConfigError("A GitHub App ID is required (--app-id or GITHUB_APP_ID)")

    private_key = environ.get("GITHUB_APP_PRIVATE_KEY") or config.get("private_key")
    if not private_key:
        key_path = pick("private_key_path", "GITHUB_APP_PRIVATE_KEY_PATH")
        if not key_path:
            raise ConfigError(
                "A GitHub App private key is required "
                "(--private-key-path, GITHUB_APP_PRIVATE_KEY_PATH or GITHUB_APP_PRIVATE_KEY)"
            )
        try:
            private_key = Path(key_path).read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"Failed to read private key '{key_path}': {exc}") from exc

    dry_run = args.dry_run or _env_flag(environ.get("DRY_RUN", "")) or bool(config.get("dry_run"))
    ignore_bots = environ.get("IGNORE_BOT_SENDERS")
    try:
        port = int(pick("port", "PORT", DEFAULT_PORT))
    except ValueError as exc:
        raise ConfigError(f"Invalid port: {exc}") from exc

    return Settings(
        app_id=str(app_id),
        private_key=private_key,
        webhook_secret=pick("webhook_secret", "GITHUB_WEBHOOK_SECRET", ""),
        rulesets_dir=pick("rulesets_dir", "RULESETS_DIR", DEFAULT_RULESETS_DIR),
        host=pick("host", "HOST", DEFAULT_HOST),
        port=port,
        dry_run=dry_run,
        ignore_bot_senders=(
            _env_flag(ignore_bots)
            if ignore_bots is not None
            else bool(config.get("ignore_bot_senders", True))
        ),
        api_url=pick("api_url", "GITHUB_API_URL", GITHUB_API_URL),
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Synchronize managed GitHub rulesets across organizations."
    )
    parser.add_argument("--config", help="YAML config file")
    parser.add_argument("--app-id", help="GitHub App ID")
    parser.add_argument("--private-key-path", help="Path to the GitHub App private key (PEM)")
    parser.add_argument(
        "--rulesets-dir", help=f"Directory of ruleset definitions (default: {DEFAULT_RULESETS_DIR})"
    )
    parser.add_argument("--api-url", help=f"GitHub API base URL (default: {GITHUB_API_URL})")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show proposed ruleset changes without applying them",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the webhook server")
    serve_parser.add_argument("--host", help=f"Bind address (default: {DEFAULT_HOST})")
    serve_parser.add_argument("--port", type=int, help=f"Bind port (default: {DEFAULT_PORT})")
    serve_parser.add_argument("--webhook-secret", help="Webhook secret used to verify deliveries")

    event_parser = subparsers.add_parser(
        "handle-event", help="Process one repository_ruleset webhook payload from a file"
    )
    event_parser.add_argument("--event", required=True, help="Path to the event payload JSON")

    render_parser = subparsers.add_parser(
        "render", help="Print translated rulesets for an organization without applying them"
    )
    render_parser.add_argument("--org", required=True, help="Target organization")
    render_parser.add_argument("--name", help="Only render the ruleset with this name")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    log_level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    numeric_level = getattr(logging, log_level_name, logging.INFO)
    logging.basicConfig(
        level=numeric_level, format="%(asctime)s %(levelname)s %(name)s - %(message)s"
    )
    args = parse_args(argv)
    try:
        settings = load_settings(args)
        broker = InstallationBroker(settings.app_id, settings.private_key, api_url=settings.api_url)
        match args.command:
            case "serve":
                serve(settings, broker)
            case "handle-event":
                event = RulesetEvent.from_payload(_read_json(Path(args.event)))
                handle_ruleset_event(event, settings, broker)
            case "render":
                rendered = render_rulesets(args.org, settings, broker, name=args.name)
                sys.stdout.write(json.dumps(rendered, indent=2) + "\n")
    except RulesetSyncError as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
