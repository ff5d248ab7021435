import pytest

from logista import (
    DEFAULT_FORMAT,
    Config,
    ConfigError,
    SkipPattern,
    TemplateFormatter,
    PreprocessOptions,
    colors_disabled,
    config_from_env,
    find_config_file,
    load_config_file,
    parse_args,
    resolve_config,
)


@pytest.fixture
def isolated(tmp_path, monkeypatch):
    """Run without a config file in the home or current directory."""
    home = tmp_path / "home"
    home.mkdir()
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.chdir(work)
    return tmp_path


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "logista.yaml"
    path.write_text(
        "format: '{a}'\n"
        "date_format: '%H:%M'\n"
        "no_colors: true\n"
        "skip:\n"
        "  - logger=db\n"
        "  - level=debug\n"
    )
    return str(path)


def test_parse_args_defaults():
    args = parse_args([])
    assert args.files == []
    assert args.format is None
    assert args.no_colors is None
    assert args.enable_simple_syntax is None
    assert args.skip == []
    assert args.input_encoding == "utf-8"


def test_parse_args_flags():
    args = parse_args(
        ["-F", "{msg}", "--no-simple-syntax", "--skip", "a=b", "-s", "c=d", "app.log"]
    )
    assert args.format == "{msg}"
    assert args.enable_simple_syntax is False
    assert args.skip == ["a=b", "c=d"]
    assert args.files == ["app.log"]


def test_defaults_without_config(isolated):
    config = resolve_config(parse_args([]), {})
    assert config.format == DEFAULT_FORMAT
    assert config.date_format == "%Y-%m-%d %H:%M:%S"
    assert config.no_colors is False
    assert config.enable_simple_syntax is True
    assert config.skip == []
    assert config.handle_non_json is False


def test_load_config_file(config_file):
    values = load_config_file(config_file)
    assert values["format"] == "{a}"
    assert values["no_colors"] is True
    assert values["skip"] == ["logger=db", "level=debug"]


def test_config_file_values(isolated, config_file, capsys):
    config = resolve_config(parse_args(["--config", config_file]), {})
    assert config.format == "{a}"
    assert config.date_format == "%H:%M"
    assert config.no_colors is True
    assert config.skip == [SkipPattern("logger", "db"), SkipPattern("level", "debug")]
    assert "Using config file:" in capsys.readouterr().err


def test_precedence(isolated, config_file):
    environ = {"LOGISTA_FORMAT": "{b}"}
    config = resolve_config(parse_args(["--config", config_file]), environ)
    assert config.format == "{b}"
    config = resolve_config(parse_args(["--config", config_file, "-F", "{c}"]), environ)
    assert config.format == "{c}"
    # Values not set by a later source are kept
    assert config.date_format == "%H:%M"


def test_config_file_in_home(isolated):
    home_config = isolated / "home" / ".logista.yaml"
    home_config.write_text("handle_non_json: yes\n")
    assert find_config_file() == str(home_config)
    config = resolve_config(parse_args([]), {})
    assert config.handle_non_json is True


def test_config_file_in_current_directory(isolated):
    (isolated / "work" / ".logista.yaml").write_text("format: '{msg}'\n")
    assert find_config_file().endswith(".logista.yaml")
    assert resolve_config(parse_args([]), {}).format == "{msg}"


def test_missing_explicit_config_file(isolated):
    with pytest.raises(ConfigError):
        find_config_file("does-not-exist.yaml")


def test_invalid_config_files(tmp_path):
    broken = tmp_path / "broken.yaml"
    broken.write_text("format: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config_file(str(broken))
    listing = tmp_path / "list.yaml"
    listing.write_text("- a\n- b\n")
    with pytest.raises(ConfigError):
        load_config_file(str(listing))
    empty = tmp_path / "empty.yaml"
    empty.write_text("")
    assert load_config_file(str(empty)) == {}


def test_unknown_config_key_warns(tmp_path, capsys):
    path = tmp_path / "extra.yaml"
    path.write_text("colour: red\nformat: '{x}'\n")
    assert load_config_file(str(path)) == {"format": "{x}"}
    assert "unknown key" in capsys.readouterr().err


def test_environment(isolated):
    environ = {
        "LOGISTA_NO_COLORS": "true",
        "LOGISTA_ENABLE_SIMPLE_SYNTAX": "0",
        "LOGISTA_SKIP": "logger=a, level=debug",
        "OTHER": "ignored",
    }
    assert config_from_env(environ) == {
        "no_colors": "true",
        "enable_simple_syntax": "0",
        "skip": "logger=a, level=debug",
    }
    config = resolve_config(parse_args([]), environ)
    assert config.no_colors is True
    assert config.enable_simple_syntax is False
    assert config.skip == [SkipPattern("logger", "a"), SkipPattern("level", "debug")]


def test_invalid_boolean(isolated):
    with pytest.raises(ConfigError):
        resolve_config(parse_args([]), {"LOGISTA_NO_COLORS": "maybe"})


def test_invalid_skip_pattern_warns(isolated, capsys):
    config = resolve_config(parse_args(["--skip", "a=b", "--skip", "bad"]), {})
    assert config.skip == [SkipPattern("a", "b")]
    assert "invalid skip pattern" in capsys.readouterr().err


def test_colors_disabled():
    args = parse_args(["--force-colors"])
    config = Config()
    assert colors_disabled(config, args, {}) is False
    assert colors_disabled(config, args, {"NO_COLOR": "1"}) is True
    config.no_colors = True
    assert colors_disabled(config, args, {}) is True


def test_simple_syntax_can_be_disabled():
    f = TemplateFormatter(
        "{level} {{.level}}",
        no_colors=True,
        preprocess_options=PreprocessOptions(enable_simple_syntax=False),
    )
    assert f.format({"level": "info"}) == "{level} info"
