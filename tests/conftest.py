from collections import Counter
from contextlib import contextmanager

import pytest

from ruleset_sync import EntityResolver

SOURCE_ORG = "source-org"
TARGET_ORG = "target-org"


class FakeGitHub:
    """In-memory stand-in for GitHubClient spanning several organizations."""

    def __init__(self) -> None:
        self.orgs: dict[str, dict] = {}
        self.upserts: list[tuple[str, dict, bool]] = []
        self.upsert_action = "created"
        self.calls: Counter = Counter()

    def add_org(self, login, org_id, repos=None, teams=None, roles=None):
        self.orgs[login] = {
            "id": org_id,
            "repos": dict(repos or {}),
            "teams": dict(teams or {}),
            "roles": dict(roles or {}),
        }

    def get_repo_name(self, repo_id):
        self.calls["get_repo_name"] += 1
        for org in self.orgs.values():
            for name, known_id in org["repos"].items():
                if known_id == repo_id:
                    return name
        return None

    def get_repo_id(self, org, repo_name):
        self.calls["get_repo_id"] += 1
        return self.orgs[org]["repos"].get(repo_name)

    def get_org_id(self, org):
        return self.orgs[org]["id"]

    def get_team_by_id(self, org_id, team_id):
        for org in self.orgs.values():
            if org["id"] != org_id:
                continue
            for slug, known_id in org["teams"].items():
                if known_id == team_id:
                    return {"id": known_id, "slug": slug}
        return None

    def get_team_by_name(self, org, slug):
        team_id = self.orgs[org]["teams"].get(slug)
        return {"id": team_id, "slug": slug} if team_id is not None else None

    def get_custom_repo_roles(self, org):
        self.calls[f"get_custom_repo_roles:{org}"] += 1
        return [{"id": role_id, "name": name} for name, role_id in self.orgs[org]["roles"].items()]

    def upsert_ruleset(self, org, definition, dry_run=False):
        self.upserts.append((org, definition, dry_run))
        return self.upsert_action

    def close(self):
        pass


class FakeBroker:
    def __init__(self, github: FakeGitHub) -> None:
        self.github = github
        self.opened: list[str] = []

    @contextmanager
    def installation_client(self, org):
        self.opened.append(org)
        yield self.github


@pytest.fixture
def github() -> FakeGitHub:
    fake = FakeGitHub()
    fake.add_org(
        SOURCE_ORG,
        1000,
        repos={"ci-workflows": 501, "security": 502},
        teams={"release-captains": 42, "security-reviewers": 43},
        roles={"maintainer-plus": 7001, "auditor": 7002},
    )
    fake.add_org(
        TARGET_ORG,
        2000,
        repos={"ci-workflows": 901, "security": 902},
        teams={"release-captains": 99, "security-reviewers": 98},
        roles={"maintainer-plus": 8001},
    )
    return fake


@pytest.fixture
def broker(github) -> FakeBroker:
    return FakeBroker(github)


@pytest.fixture
def resolver(github, broker) -> EntityResolver:
    return EntityResolver(github, TARGET_ORG, broker.installation_client)


def ruleset_definition(**overrides) -> dict:
    definition = {
        "id": 12,
        "name": "protect-main",
        "target": "branch",
        "source_type": "Organization",
        "source": SOURCE_ORG,
        "enforcement": "active",
        "conditions": {"ref_name": {"include": ["~DEFAULT_BRANCH"], "exclude": []}},
        "rules": [
            {"type": "deletion"},
            {
                "type": "pull_request",
                "parameters": {
                    "required_approving_review_count": 1,
                    "dismiss_stale_reviews_on_push": True,
                },
            },
            {
                "type": "workflows",
                "parameters": {
                    "do_not_enforce_on_create": False,
                    "workflows": [
                        {"repository_id": 501, "path": ".github/workflows/ci.yml", "ref": "refs/heads/main"},
                        {"repository_id": 502, "path": ".github/workflows/scan.yml", "ref": "refs/tags/v1"},
                    ],
                },
            },
        ],
        "bypass_actors": [
            {"actor_id": 1, "actor_type": "OrganizationAdmin", "bypass_mode": "always"},
            {"actor_id": 42, "actor_type": "Team", "bypass_mode": "pull_request"},
            {"actor_id": 7001, "actor_type": "RepositoryRole", "bypass_mode": "always"},
            {"actor_id": 123456, "actor_type": "Integration", "bypass_mode": "always"},
        ],
    }
    definition.update(overrides)
    return definition


@pytest.fixture
def make_definition():
    return ruleset_definition
