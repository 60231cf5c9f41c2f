"""
Tests for settings and YAML declaration files.
"""

from pathlib import Path

import pytest

from moraine import ConfigError, Format, MoraineSettings, Ref
from moraine.config.loader import load_document, load_stack, parse_value
from moraine.core.resource import resolve


STACK_YAML = """
name: todo-app
resources:
  - id: table
    kind: dynamodb:Table
    inputs:
      partition_key: lecture
  - id: layer
    kind: lambda:LayerVersion
    inputs:
      code: layers/common
  - id: add_item
    kind: lambda:Function
    inputs:
      handler: index.handler
      environment:
        TABLE_NAME: ${table.table_name}
    depends_on: [layer]
  - id: config
    kind: action:WriteConfig
    inputs:
      body: "window.config = {api: '${add_item.arn}'}"
pipeline:
  resume_from_failure: true
  stages:
    - name: build
      command: npm run build
    - name: deploy
      deploy: true
"""


class TestParseValue:
    """Tests for placeholder parsing."""

    def test_whole_placeholder_is_ref(self):
        """A string that is exactly one placeholder becomes a Ref."""
        assert parse_value("${table.table_name}") == Ref("table", "table_name")

    def test_plain_strings_untouched(self):
        """Strings without placeholders, including braces, stay literal."""
        assert parse_value("{not: a ref}") == "{not: a ref}"
        assert parse_value(42) == 42

    def test_embedded_placeholders_become_format(self):
        """Placeholders inside text become a Format with literal braces escaped."""
        value = parse_value("const cfg = {url: '${api.url}', key: '${api.key}'}")

        assert isinstance(value, Format)
        assert value.refs() == [Ref("api", "url"), Ref("api", "key")]

        outputs = {"url": "https://x", "key": "k1"}
        rendered = resolve(value, lambda ref: outputs[ref.output])
        assert rendered == "const cfg = {url: 'https://x', key: 'k1'}"

    def test_nested_structures(self):
        """Placeholders are found inside nested mappings and lists."""
        value = parse_value({"env": {"T": "${t.name}"}, "layers": ["${l.arn}", "static"]})

        assert value == {"env": {"T": Ref("t", "name")}, "layers": [Ref("l", "arn"), "static"]}


class TestLoader:
    """Tests for declaration files."""

    def test_load_stack(self, tmp_path):
        """Resources, refs and explicit dependencies are loaded."""
        path = tmp_path / "stack.yaml"
        path.write_text(STACK_YAML, encoding="utf-8")

        stack = load_stack(path)
        graph = stack.graph()

        assert stack.name == "todo-app"
        assert stack.list_resources() == ["table", "layer", "add_item", "config"]
        assert set(graph.dependencies("add_item")) == {"table", "layer"}
        assert graph.dependencies("config") == ["add_item"]

    def test_pipeline_section(self, tmp_path):
        """The pipeline section is validated into stage declarations."""
        path = tmp_path / "stack.yaml"
        path.write_text(STACK_YAML, encoding="utf-8")

        document = load_document(path)

        assert document.pipeline.resume_from_failure is True
        assert [s.name for s in document.pipeline.stages] == ["build", "deploy"]
        assert document.pipeline.stages[1].deploy is True

    def test_stage_needs_exactly_one_action(self, tmp_path):
        """A stage with both or neither of command/deploy is rejected."""
        path = tmp_path / "stack.yaml"
        path.write_text(
            "pipeline:\n  stages:\n    - name: bad\n      command: make\n      deploy: true\n",
            encoding="utf-8",
        )

        with pytest.raises(ConfigError, match="exactly one"):
            load_document(path)

    def test_missing_fields_rejected(self, tmp_path):
        """A resource without a kind is a ConfigError."""
        path = tmp_path / "stack.yaml"
        path.write_text("resources:\n  - id: table\n", encoding="utf-8")

        with pytest.raises(ConfigError):
            load_document(path)

    def test_invalid_yaml(self, tmp_path):
        """Unparseable YAML is a ConfigError."""
        path = tmp_path / "stack.yaml"
        path.write_text("resources: [unclosed\n", encoding="utf-8")

        with pytest.raises(ConfigError):
            load_document(path)

    def test_missing_file(self, tmp_path):
        """A missing file is a ConfigError."""
        with pytest.raises(ConfigError):
            load_document(tmp_path / "absent.yaml")

    def test_empty_file(self, tmp_path):
        """An empty document declares an empty default stack."""
        path = tmp_path / "stack.yaml"
        path.write_text("", encoding="utf-8")

        assert len(load_stack(path)) == 0


class TestSettings:
    """Tests for MoraineSettings."""

    def test_defaults(self, monkeypatch):
        """Defaults apply without a file or environment."""
        for name in ("CONCURRENCY", "OPERATION_TIMEOUT", "STATE_DIR", "LOG_LEVEL", "LOG_FORMAT"):
            monkeypatch.delenv(f"MORAINE_{name}", raising=False)

        settings = MoraineSettings()

        assert settings.concurrency == 4
        assert settings.operation_timeout is None
        assert settings.state_dir == Path(".moraine/state")
        assert settings.log_format == "console"

    def test_environment(self, monkeypatch):
        """MORAINE_* variables configure the engine."""
        monkeypatch.setenv("MORAINE_CONCURRENCY", "12")
        monkeypatch.setenv("MORAINE_RESUME_FROM_FAILURE", "true")

        settings = MoraineSettings()

        assert settings.concurrency == 12
        assert settings.resume_from_failure is True

    def test_file_env_and_override_precedence(self, tmp_path, monkeypatch):
        """Overrides beat the environment, which beats the file."""
        monkeypatch.setenv("MORAINE_CONCURRENCY", "16")
        monkeypatch.delenv("MORAINE_OPERATION_TIMEOUT", raising=False)
        path = tmp_path / "moraine.yaml"
        path.write_text(
            "concurrency: 2\noperation_timeout: 30\nlog_format: json\nunknown: ignored\n",
            encoding="utf-8",
        )

        from_env = MoraineSettings.from_file(path)
        overridden = MoraineSettings.from_file(path, concurrency=3)

        assert from_env.concurrency == 16
        assert from_env.operation_timeout == 30
        assert from_env.log_format == "json"
        assert overridden.concurrency == 3

    def test_invalid_values(self, tmp_path, monkeypatch):
        """Out-of-range values raise ConfigError."""
        monkeypatch.delenv("MORAINE_CONCURRENCY", raising=False)
        path = tmp_path / "moraine.yaml"
        path.write_text("concurrency: 0\n", encoding="utf-8")

        with pytest.raises(ConfigError):
            MoraineSettings.from_file(path)

    def test_non_mapping_file(self, tmp_path):
        """A settings file must hold a mapping."""
        path = tmp_path / "moraine.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ConfigError):
            MoraineSettings.from_file(path)
