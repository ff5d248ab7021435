import pytest

from logista import (
    apply_color_code,
    apply_color_to_string,
    apply_colors,
    color_by_level_name,
    strip_tags,
)


def test_single_tag():
    assert apply_colors("<red>error</red>") == "\x1b[31merror\x1b[0m"


def test_multiple_styles_and_short_closer():
    assert apply_colors("<bold cyan>x</>") == "\x1b[1;36mx\x1b[0m"


def test_nested_tags_resolve_innermost_first():
    assert (
        apply_colors("<red>a <bold>b</bold> c</red>")
        == "\x1b[31ma \x1b[1mb\x1b[0m c\x1b[0m"
    )


def test_style_names_are_case_insensitive():
    assert apply_colors("<RED>x</RED>") == "\x1b[31mx\x1b[0m"
    assert apply_color_code("Bg-Blue", "x") == "\x1b[44mx\x1b[0m"


def test_unknown_style_keeps_content():
    assert apply_colors("<nocolor>x</nocolor>") == "x"
    assert apply_colors("<red nocolor>x</>") == "\x1b[31mx\x1b[0m"


def test_closing_tag_name_is_not_checked():
    assert apply_colors("<red>x</blue>") == "\x1b[31mx\x1b[0m"


def test_text_without_tags_is_unchanged():
    assert apply_colors("a < b and c > d") == "a < b and c > d"
    assert apply_colors("<red>unclosed") == "<red>unclosed"


def test_disabled_strips_tags():
    assert apply_colors("<red>a <bold>b</bold></red>", disabled=True) == "a b"
    assert strip_tags("<green>ok</>") == "ok"


def test_apply_color_to_string():
    assert apply_color_to_string("x", "red") == "\x1b[31mx\x1b[0m"
    assert apply_color_to_string("x", "brightwhite") == "\x1b[97mx\x1b[0m"
    assert apply_color_to_string("x", "nope") == "x"


@pytest.mark.parametrize(
    "level,color",
    [
        ("ERROR", "red"),
        ("fatal", "red"),
        ("critical", "red"),
        ("warning", "yellow"),
        ("WARN", "yellow"),
        ("info", "green"),
        ("debug", "cyan"),
        ("trace", "blue"),
        ("custom", "white"),
    ],
)
def test_color_by_level_name(level, color):
    assert color_by_level_name(level) == color
