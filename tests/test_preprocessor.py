import pytest

from logista import (
    PreprocessOptions,
    TemplateFormatter,
    preprocess_template,
    transform_at_symbol,
    transform_simple_syntax,
)


@pytest.mark.parametrize(
    "template,expected",
    [
        ("{level} {message}", "{{.level}} {{.message}}"),
        ("{level | pad 7}", "{{.level | pad 7}}"),
        ("{ level }", "{{.level}}"),
        ("{user.name}", "{{.user.name}}"),
        ("{{.timestamp | date}} {{.level}}", "{{.timestamp | date}} {{.level}}"),
        ("{level} {{.message}}", "{{.level}} {{.message}}"),
        ("[{level}] done", "[{{.level}}] done"),
        ("", ""),
        ("no fields", "no fields"),
    ],
)
def test_simple_syntax(template, expected):
    assert preprocess_template(template) == expected


def test_at_syntax_in_simple_reference():
    assert preprocess_template("{@grpc.service}") == '{{index . "grpc.service"}}'
    assert (
        preprocess_template("{@grpc.method | pad 10}")
        == '{{index . "grpc.method" | pad 10}}'
    )


def test_at_syntax_in_native_action():
    assert (
        preprocess_template("{{@grpc.service | trunc 10}}")
        == '{{(index . "grpc.service") | trunc 10}}'
    )


def test_at_symbol_after_word_character_is_kept():
    assert (
        preprocess_template("mail user@example.com {level}")
        == "mail user@example.com {{.level}}"
    )
    assert transform_at_symbol("user@example.com") == "user@example.com"


def test_unmatched_braces_pass_through():
    assert preprocess_template("{level") == "{level"
    assert preprocess_template("{a} {b") == "{{.a}} {b"
    assert preprocess_template("a } b") == "a } b"


def test_nested_braces_inside_simple_reference():
    assert (
        preprocess_template('{level | printf "{%s}"}')
        == '{{.level | printf "{%s}"}}'
    )


def test_simple_syntax_disabled():
    options = PreprocessOptions(enable_simple_syntax=False)
    assert preprocess_template("{level} {{.message}}", options) == "{level} {{.message}}"


def test_at_syntax_disabled():
    options = PreprocessOptions(enable_at_syntax=False)
    assert preprocess_template("{{@grpc.service}}", options) == "{{@grpc.service}}"
    assert preprocess_template("{level}", options) == "{{.level}}"


def test_native_template_is_returned_unchanged():
    template = '{{if eq .level "error"}}{{.message}}{{end}}'
    assert transform_simple_syntax(template, PreprocessOptions()) == template


def test_at_symbol_inside_string_literals_is_kept():
    template = '{{if eq .user "@admin"}}A{{end}}'
    assert preprocess_template(template) == template
    assert preprocess_template("{{printf `@%s` .name}}") == "{{printf `@%s` .name}}"
    f = TemplateFormatter(template, no_colors=True)
    assert f.format({"user": "@admin"}) == "A"
    assert f.format({"user": "guest"}) == ""


def test_at_syntax_only():
    options = PreprocessOptions(enable_simple_syntax=False)
    assert (
        preprocess_template("{level}: {@grpc.service}", options)
        == '{level}: {{index . "grpc.service"}}'
    )
    assert (
        preprocess_template('{@grpc.service | color "blue"}', options)
        == '{{index . "grpc.service" | color "blue"}}'
    )


def test_simple_syntax_only():
    options = PreprocessOptions(enable_at_syntax=False)
    assert (
        preprocess_template("{level}: {@grpc.service}", options)
        == "{{.level}}: {{.@grpc.service}}"
    )


@pytest.mark.parametrize(
    "template",
    [
        "",
        "{level} {message}",
        "{level | pad 7} {@grpc.service | pad 20}",
        "{{.timestamp | date}} {{.level}}",
        "{{@grpc.service}}",
        "{{.a}} @b",
        '{{if eq .user "@admin"}}A{{end}}',
        "mail user@example.com {level}",
        "{a} {b",
        "<red>{level}</red> {{.message}}",
    ],
)
def test_preprocessing_is_idempotent(template):
    once = preprocess_template(template)
    assert preprocess_template(once) == once


def test_at_syntax_only_is_idempotent():
    options = PreprocessOptions(enable_simple_syntax=False)
    once = preprocess_template("{level}: {@grpc.service} {{@grpc.method}}", options)
    assert preprocess_template(once, options) == once
