"""
Tests for execution/codex_rag/citation.py

Covers: statute, case law and vault formats, fallbacks for missing fields,
        legacy aliases and the unknown-source fallback.
"""

import pytest


class TestStatuteCitation:

    def test_article_and_code(self):
        from execution.codex_rag.citation import format_citation
        assert format_citation("public-statute", {"article": "1134", "code": "Code Civil"}) == "1134 du Code Civil"

    def test_enum_member_accepted(self):
        from execution.codex_rag.citation import format_citation
        from execution.codex_rag.models import SourceType
        assert format_citation(SourceType.PUBLIC_STATUTE, {"article": "L1234-1", "code": "Code du travail"}) == (
            "L1234-1 du Code du travail"
        )

    def test_missing_fields_fall_back(self):
        from execution.codex_rag.citation import format_citation
        assert format_citation("public-statute", {}) == "Article du Code"
        assert format_citation("public-statute", None) == "Article du Code"

    def test_blank_field_treated_as_missing(self):
        from execution.codex_rag.citation import format_citation
        assert format_citation("public-statute", {"article": "  ", "code": "Code pénal"}) == "Article du Code pénal"

    def test_numeric_article(self):
        from execution.codex_rag.citation import format_citation
        assert format_citation("public-statute", {"article": 1240, "code": "Code Civil"}) == "1240 du Code Civil"

    def test_legifrance_alias(self):
        from execution.codex_rag.citation import format_citation
        assert format_citation("legifrance", {"article": "1134", "code": "Code Civil"}) == "1134 du Code Civil"


class TestCaselawCitation:

    def test_full_metadata(self):
        from execution.codex_rag.citation import format_citation
        meta = {"jurisdiction": "Cour de cassation", "date": "2023-05-10", "caseNumber": "21-12.345"}
        assert format_citation("public-caselaw", meta) == "Cour de cassation, 2023-05-10, 21-12.345"

    def test_pourvoi_key_used_when_case_number_absent(self):
        from execution.codex_rag.citation import format_citation
        meta = {"jurisdiction": "Conseil d'État", "date": "2022-01-01", "pourvoi": "450123"}
        assert format_citation("judilibre", meta) == "Conseil d'État, 2022-01-01, 450123"

    def test_fallbacks(self):
        from execution.codex_rag.citation import format_citation
        assert format_citation("public-caselaw", {}) == "Cour, Date inconnue, N° pourvoi"


class TestVaultCitation:

    def test_file_name(self):
        from execution.codex_rag.citation import format_citation
        assert format_citation("private-vault", {"fileName": "bail.pdf"}) == "bail.pdf (Document privé)"

    def test_fallback(self):
        from execution.codex_rag.citation import format_citation
        assert format_citation("vault", {}) == "Document (Document privé)"


class TestUnknownSource:

    @pytest.mark.parametrize("source_type", ["unknown", "", None, 42, "public"])
    def test_unknown_never_raises(self, source_type):
        from execution.codex_rag.citation import format_citation, UNKNOWN_SOURCE
        assert format_citation(source_type, {"article": "1"}) == UNKNOWN_SOURCE == "Source inconnue"

    def test_formatter_class_delegates(self):
        from execution.codex_rag.citation import LegalCitationFormatter
        formatter = LegalCitationFormatter()
        assert formatter.format("public-statute", {"article": "9", "code": "Code Civil"}) == "9 du Code Civil"
