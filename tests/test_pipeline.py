import json

import pytest

from ruleset_sync import DecodeError
from ruleset_sync import ReadError
from ruleset_sync import RulesetDocument
from ruleset_sync import RulesetEvent
from ruleset_sync import RulesetProcessingError
from ruleset_sync import Settings
from ruleset_sync import handle_ruleset_event
from ruleset_sync import is_managed
from ruleset_sync import load_candidates
from ruleset_sync import render_rulesets


def _write(path, data) -> None:
    path.write_text(json.dumps(data), encoding="utf-8")


@pytest.fixture
def rulesets_dir(tmp_path, make_definition):
    _write(tmp_path / "10-protect-main.json", make_definition())
    _write(tmp_path / "20-protect-dev.json", make_definition(name="protect-dev", bypass_actors=[]))
    (tmp_path / "README.md").write_text("not a ruleset", encoding="utf-8")
    return tmp_path


@pytest.fixture
def settings(rulesets_dir) -> Settings:
    return Settings(app_id="1", private_key="unused", rulesets_dir=str(rulesets_dir))


def _event(name="protect-main", **overrides) -> RulesetEvent:
    values = {
        "action": "edited",
        "organization": "target-org",
        "ruleset_name": name,
        "sender_login": "octocat",
        "sender_type": "User",
    }
    values.update(overrides)
    return RulesetEvent(**values)


def test_load_candidates_reads_json_files_in_order(rulesets_dir) -> None:
    documents = load_candidates(rulesets_dir)

    assert [document.name for document in documents] == ["protect-main", "protect-dev"]


def test_load_candidates_missing_directory(tmp_path) -> None:
    with pytest.raises(ReadError):
        load_candidates(tmp_path / "missing")


def test_load_candidates_malformed_json_names_file(rulesets_dir) -> None:
    (rulesets_dir / "30-broken.json").write_text("{", encoding="utf-8")

    with pytest.raises(DecodeError, match="30-broken.json"):
        load_candidates(rulesets_dir)


def test_load_candidates_invalid_document_names_file(rulesets_dir) -> None:
    _write(rulesets_dir / "30-nameless.json", {"source": "source-org"})

    with pytest.raises(DecodeError, match="30-nameless.json"):
        load_candidates(rulesets_dir)


def test_is_managed_requires_exact_name(make_definition) -> None:
    document = RulesetDocument.from_dict(make_definition(name="protect-dev"))

    assert is_managed(_event("protect-dev"), document)
    assert not is_managed(_event("protect-main"), document)
    assert not is_managed(_event("Protect-Dev"), document)


def test_handle_event_restores_managed_ruleset(settings, broker, github) -> None:
    summary = handle_ruleset_event(_event(), settings, broker)

    assert summary == {"created": 1}
    [(org, payload, dry_run)] = github.upserts
    assert org == "target-org"
    assert dry_run is False
    assert payload["name"] == "protect-main"
    assert [actor["actor_id"] for actor in payload["bypass_actors"]] == [1, 99, 8001, 123456]
    assert [w["repository_id"] for w in payload["rules"][2]["parameters"]["workflows"]] == [901, 902]
    assert broker.opened[0] == "target-org"


def test_handle_event_skips_unmanaged_rulesets(settings, broker, github) -> None:
    summary = handle_ruleset_event(_event("protect-release"), settings, broker)

    assert summary == {}
    assert github.upserts == []
    assert broker.opened == []


def test_handle_event_passes_dry_run(settings, broker, github) -> None:
    settings.dry_run = True
    github.upsert_action = "dry_run_update"

    summary = handle_ruleset_event(_event("protect-dev"), settings, broker)

    assert summary == {"dry_run_update": 1}
    assert github.upserts[0][2] is True


@pytest.mark.parametrize(
    "event",
    [
        _event(action="pinned"),
        _event(sender_login="ruleset-sync[bot]", sender_type="Bot"),
    ],
)
def test_handle_event_ignores_events(settings, broker, github, event) -> None:
    assert handle_ruleset_event(event, settings, broker) == {}
    assert github.upserts == []


def test_handle_event_can_accept_bot_senders(settings, broker, github) -> None:
    settings.ignore_bot_senders = False

    summary = handle_ruleset_event(_event(sender_type="Bot"), settings, broker)

    assert summary == {"created": 1}


def test_handle_event_applies_nothing_on_failure(settings, broker, github) -> None:
    del github.orgs["target-org"]["teams"]["release-captains"]

    with pytest.raises(RulesetProcessingError):
        handle_ruleset_event(_event(), settings, broker)

    assert github.upserts == []


def test_render_rulesets(settings, broker) -> None:
    rendered = render_rulesets("target-org", settings, broker, name="protect-dev")

    assert [ruleset["name"] for ruleset in rendered] == ["protect-dev"]
    assert [w["repository_id"] for w in rendered[0]["rules"][2]["parameters"]["workflows"]] == [901, 902]
