"""Unit tests for the document-level audit coordinator."""

# pylint: disable=missing-class-docstring,missing-function-docstring

from tablerepair.audit.coordinator import audit_data, audit_field, get_question_id, get_questions
from tablerepair.audit.schema import Severity

GHOST = "<table><tr><th>Coluna 1</th><th>Valor</th></tr><tr><td></td><td>10</td></tr></table>"
CLEAN = "<table><tr><th>Nome</th><th>Idade</th></tr><tr><td>Ana</td><td>30</td></tr></table>"
DUP_HEADERS = "<table><tr><th>A</th><th>A</th></tr><tr><td>1</td><td>2</td></tr></table>"
MARKDOWN_FIELD = "Tabela:\n| Nome | Idade |\n| --- | --- |\n| Ana | 30 |"


class TestGetQuestionId:

    def test_prefers_id(self):
        assert get_question_id({"id": "Q1", "id_pasta": "P1"}) == "Q1"

    def test_falls_back_in_order(self):
        assert get_question_id({"id": "", "id_pasta": None, "id_resolucao": 42}) == 42

    def test_unknown_when_absent(self):
        assert get_question_id({"enunciado": "x"}) == "UNKNOWN"


class TestGetQuestions:

    def test_bare_list(self):
        data = [{"id": 1}]
        assert get_questions(data) is data

    def test_wrapped_object(self):
        assert get_questions({"questoes": [{"id": 1}], "meta": {}}) == [{"id": 1}]

    def test_object_without_questions(self):
        assert get_questions({"meta": {}}) == []

    def test_scalar(self):
        assert get_questions("nope") == []


class TestAuditField:

    def test_markdown_table_in_field(self):
        issues, tables = audit_field(MARKDOWN_FIELD, "Q1", 0, "enunciado")
        assert tables == 0
        assert [i.type for i in issues] == ["MARKDOWN_TABLE_IN_FIELD"]
        assert issues[0].id == "q0-enunciado-md"
        assert issues[0].severity == Severity.BAD
        assert issues[0].raw_html == MARKDOWN_FIELD

    def test_markdown_excerpt_is_truncated(self):
        long_field = MARKDOWN_FIELD + "\n" + "x" * 1000
        issues, _ = audit_field(long_field, "Q1", 0, "enunciado")
        assert len(issues[0].raw_html) == 600

    def test_markdown_next_to_html_table_is_not_field_level(self):
        issues, tables = audit_field(MARKDOWN_FIELD + CLEAN, "Q1", 0, "enunciado")
        assert tables == 1
        assert "MARKDOWN_TABLE_IN_FIELD" not in [i.type for i in issues]

    def test_table_indices_are_positional(self):
        issues, tables = audit_field(f"<p>a</p>{CLEAN}<p>b</p>{DUP_HEADERS}", "Q1", 2, "resolucao")
        assert tables == 2
        assert [(i.type, i.table_index) for i in issues] == [("HEADER_DUP", 1)]
        assert issues[0].question_index == 2

    def test_nested_table_is_not_indexed(self):
        nested = f"<table><tr><th>A</th></tr><tr><td>{DUP_HEADERS}</td></tr></table>"
        issues, tables = audit_field(nested + DUP_HEADERS, "Q1", 0, "enunciado")
        assert tables == 2
        assert {i.table_index for i in issues if i.type == "HEADER_DUP"} == {1}

    def test_tables_are_audited_as_written(self):
        escaped = "<table>\n<tr><th>Setor</th><th>Gasto</th></tr>\n<tr><td>P&amp;D interno</td><td>10</td></tr>\n</table>"
        bare = "<table><tr><th>Setor</th><th>Gasto</th></tr><tr><td>P&D interno</td><td>10</td></tr></table>"
        issues, tables = audit_field(f"<p>Custos</p>\n{escaped}\n<p>e</p>{bare}", "Q1", 0, "enunciado")
        assert tables == 2
        assert [(i.type, i.table_index) for i in issues] == [("BROKEN_ENTITY", 1)]
        assert issues[0].raw_html == bare

    def test_full_text_is_the_field(self):
        field = f"<p>antes</p>{GHOST}"
        issues, _ = audit_field(field, "Q1", 0, "enunciado")
        assert issues[0].full_text == field


class TestAuditData:

    def test_ghost_column_scenario(self):
        report = audit_data([{"enunciado": GHOST}])
        assert report.stats.total_tables == 1
        assert report.stats.bad == 1
        assert report.stats.warn == 0
        assert len(report.issues) == 1
        issue = report.issues[0]
        assert (issue.type, issue.severity, issue.location.col) == ("GHOST_COLUMN", Severity.BAD, 0)
        assert issue.qid == "UNKNOWN"

    def test_clean_document_has_no_issues(self):
        report = audit_data({"questoes": [{"id": "Q1", "enunciado": CLEAN, "resolucao": "<p>texto</p>"}]})
        assert report.issues == []
        assert report.stats.total_tables == 1

    def test_only_auditable_fields_are_read(self):
        report = audit_data([{"id": "Q1", "comentario": DUP_HEADERS, "resolucao_aprofundada": DUP_HEADERS}])
        assert [i.field for i in report.issues] == ["resolucao_aprofundada"]

    def test_non_object_questions_are_skipped(self):
        report = audit_data(["texto solto", {"id": "Q2", "texto_associado": DUP_HEADERS}])
        assert [(i.qid, i.question_index) for i in report.issues] == [("Q2", 1)]

    def test_severity_filter(self, sample_questions):
        report = audit_data(sample_questions)
        bad = report.filtered("BAD")
        assert all(i.severity == Severity.BAD for i in bad)
        assert len(report.filtered("ALL")) == len(report.issues)
        assert len(report.filtered("all")) >= len(bad)
