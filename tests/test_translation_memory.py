"""Translation memory lookup and term base behaviour."""
from __future__ import annotations

import pytest

from tms_workflow.errors import ValidationError
from tms_workflow.services import TermBaseService, TranslationMemoryService
from tms_workflow.state import State


@pytest.fixture
def tm() -> TranslationMemoryService:
    return TranslationMemoryService(State(), fuzzy_threshold=75)


def test_exact_match_scores_100_and_bumps_usage(tm: TranslationMemoryService) -> None:
    entry = tm.add_entry("en", "fr", "Hello", "Bonjour", project_id="p1")

    matches = tm.find_matches("Hello", "en", "fr", project_id="p1")

    assert [(match.entry_id, match.score) for match in matches] == [(entry.id, 100.0)]
    assert tm.list_entries("en", "fr")[0].usage_count == 2


def test_fuzzy_matches_are_ranked_below_100(tm: TranslationMemoryService) -> None:
    tm.add_entry("en", "fr", "Save the file", "Enregistrer le fichier", project_id="p1")
    tm.add_entry("en", "fr", "Save the files now", "Enregistrer les fichiers", project_id="p1")
    tm.add_entry("en", "fr", "Delete everything", "Tout supprimer", project_id="p1")

    matches = tm.find_matches("Save the files", "en", "fr", project_id="p1")

    assert [match.target_text for match in matches] == ["Enregistrer le fichier", "Enregistrer les fichiers"]
    assert all(75 <= match.score < 100 for match in matches)
    assert matches[0].score >= matches[1].score


def test_no_match_is_an_empty_list(tm: TranslationMemoryService) -> None:
    tm.add_entry("en", "fr", "Hello", "Bonjour", project_id="p1")
    assert tm.find_matches("Quarterly revenue report", "en", "fr", project_id="p1") == []
    assert tm.find_matches("Hello", "en", "de", project_id="p1") == []


def test_project_scope_is_strict(tm: TranslationMemoryService) -> None:
    tm.add_entry("en", "fr", "Hello", "Bonjour", project_id="p1")
    tm.add_entry("en", "fr", "Hello", "Salut")

    assert [match.target_text for match in tm.find_matches("Hello", "en", "fr", project_id="p2")] == []
    assert [match.target_text for match in tm.find_matches("Hello", "en", "fr", project_id="p1")] == ["Bonjour"]


def test_language_pair_is_case_insensitive(tm: TranslationMemoryService) -> None:
    tm.add_entry("EN", "FR", "Hello", "Bonjour", project_id="p1")
    assert tm.find_matches("Hello", "en", "fr", project_id="p1")[0].target_text == "Bonjour"


def test_add_entry_upserts_same_source(tm: TranslationMemoryService) -> None:
    first = tm.add_entry("en", "fr", "Hello", "Bonjour", project_id="p1")
    second = tm.add_entry("en", "fr", "Hello", "Salut", project_id="p1")

    entries = tm.list_entries("en", "fr")
    assert first.id == second.id
    assert len(entries) == 1
    assert entries[0].target_text == "Salut"
    assert entries[0].usage_count == 2


def test_add_entry_requires_both_texts(tm: TranslationMemoryService) -> None:
    with pytest.raises(ValidationError):
        tm.add_entry("en", "fr", "Hello", "")


def test_term_lookup_in_text() -> None:
    terms = TermBaseService(State())
    terms.add_entry("p1", "Invoice", "Facture")
    terms.add_entry("p1", "Refund", "Remboursement")
    terms.add_entry("p2", "Invoice", "Rechnung")

    found = terms.lookup_in_text("p1", "Send the invoice today")

    assert [(entry.source, entry.target) for entry in found] == [("Invoice", "Facture")]
    assert len(terms.lookup("p1")) == 2
