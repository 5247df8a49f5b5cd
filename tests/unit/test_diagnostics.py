"""Unit tests for protoc diagnostic parsing and classification."""

from cdc_protogen.errors import (
    SchemaCompilationError,
    SchemaGrammarError,
    SchemaInputError,
    SchemaResolutionError,
)
from cdc_protogen.frontend.diagnostics import (
    Diagnostic,
    classify,
    first_error,
    parse_diagnostics,
)


class TestParseDiagnostics:
    def test_located_line(self):
        [diag] = parse_diagnostics('events.proto:12:5: "Datum" is not defined.\n')
        assert diag == Diagnostic(
            message='"Datum" is not defined.', file="events.proto", line=12, column=5
        )

    def test_file_only_line(self):
        [diag] = parse_diagnostics("does/not/exist.proto: File not found.\n")
        assert diag.file == "does/not/exist.proto"
        assert diag.line is None
        assert diag.message == "File not found."

    def test_unstructured_line(self):
        [diag] = parse_diagnostics("protoc: something odd happened\n")
        assert diag.file is None
        assert diag.message == "protoc: something odd happened"

    def test_blank_lines_skipped(self):
        assert parse_diagnostics("\n  \n") == []

    def test_warning_flag(self):
        [diag] = parse_diagnostics(
            "events.proto:3:1: warning: Import common.proto is unused.\n"
        )
        assert diag.is_warning

    def test_order_preserved(self):
        diags = parse_diagnostics("a.proto:1:1: first\nb.proto:2:2: second\n")
        assert [d.message for d in diags] == ["first", "second"]


class TestClassify:
    def test_undefined_type_is_resolution(self):
        diag = Diagnostic('"Missing" is not defined.', "a.proto", 6, 3)
        err = classify(diag)
        assert isinstance(err, SchemaResolutionError)
        assert err.location == "a.proto:6:3"

    def test_failed_import_is_resolution(self):
        diag = Diagnostic('Import "x.proto" was not found or had errors.', "a.proto", 5, 1)
        assert isinstance(classify(diag), SchemaResolutionError)

    def test_missing_import_file_is_resolution(self):
        diag = Diagnostic("File not found.", "does/not/exist.proto")
        err = classify(diag, input_files=["/src/protos/a.proto"])
        assert isinstance(err, SchemaResolutionError)
        assert "does/not/exist.proto" in err.message

    def test_missing_input_file_is_input(self):
        diag = Diagnostic("File not found.", "/src/protos/a.proto")
        err = classify(diag, input_files=["/src/protos/a.proto"])
        assert isinstance(err, SchemaInputError)

    def test_grammar_fallback(self):
        diag = Diagnostic('Expected ";".', "a.proto", 7, 3)
        err = classify(diag, details="full stderr")
        assert isinstance(err, SchemaGrammarError)
        assert err.details == "full stderr"
        assert str(err) == 'a.proto:7:3: Expected ";".'


class TestFirstError:
    def test_skips_warnings(self):
        stderr = (
            "a.proto:2:1: warning: Import b.proto is unused.\n"
            'a.proto:9:3: "Nope" is not defined.\n'
        )
        err = first_error(stderr)
        assert isinstance(err, SchemaResolutionError)
        assert err.line == 9
        assert err.details == stderr

    def test_no_diagnostic(self):
        err = first_error("")
        assert type(err) is SchemaCompilationError
        assert "without a diagnostic" in err.message
