import textwrap

import pytest

from dynapply.core.config import load_config
from dynapply.core.last_applied import DEFAULT_ANNOTATION_KEY


def test_defaults_and_run_id_generated(tmp_path):
    cfg = load_config(files=(str(tmp_path / "missing.yml"),))
    assert cfg.apply.annotation_key == DEFAULT_ANNOTATION_KEY
    assert cfg.output.format == "yaml"
    assert cfg.logging.console_level == "INFO"
    assert cfg.app.dry_run is False
    rid1 = cfg.run_id
    assert isinstance(rid1, str) and len(rid1) == 12
    assert cfg.run_id == rid1  # stable once generated


def test_file_then_env_then_cli_precedence(tmp_path, monkeypatch):
    (tmp_path / "dynapply.yml").write_text(textwrap.dedent("""
      apply:
        annotation_key: "file.example/applied"
      output:
        format: "json"
      logging:
        console_level: "WARNING"
    """), encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    monkeypatch.setenv("DYNAPPLY_APPLY__ANNOTATION_KEY", "env.example/applied")
    monkeypatch.setenv("DYNAPPLY_APP__DRY_RUN", "yes")

    cfg = load_config(
        {"apply": {"annotation_key": "cli.example/applied"}},
        files=(str(tmp_path / "dynapply.yml"),),
    )

    assert cfg.apply.annotation_key == "cli.example/applied"  # CLI wins
    assert cfg.app.dry_run is True                             # env coerced to bool
    assert cfg.output.format == "json"                         # from file
    assert cfg.logging.console_level == "WARNING"              # from file


def test_env_interpolation(tmp_path, monkeypatch):
    (tmp_path / "dynapply.yml").write_text(textwrap.dedent("""
      apply:
        annotation_key: "${APPLY_KEY}"
    """), encoding="utf-8")
    monkeypatch.setenv("APPLY_KEY", "team.example.com/last-applied")
    cfg = load_config(files=(str(tmp_path / "dynapply.yml"),))
    assert cfg.apply.annotation_key == "team.example.com/last-applied"


def test_validation_lists_every_problem(tmp_path):
    with pytest.raises(ValueError) as exc:
        load_config(
            {
                "apply": {"annotation_key": "bad key/with spaces"},
                "output": {"format": "toml"},
                "logging": {"console_level": "LOUD"},
            },
            files=(str(tmp_path / "missing.yml"),),
        )
    msg = str(exc.value)
    assert "apply.annotation_key" in msg
    assert "output.format" in msg
    assert "logging.console_level" in msg


def test_top_level_yaml_must_be_mapping(tmp_path):
    (tmp_path / "dynapply.yml").write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(files=(str(tmp_path / "dynapply.yml"),))
