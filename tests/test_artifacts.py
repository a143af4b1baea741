"""Tests for artifact references and the signup script generator."""

import json
import re

import pytest

from formpublisher.artifacts import SignupScriptGenerator, artifact_ref_for, group_rows
from formpublisher.composition import make_field, normalize, pair
from formpublisher.errors import GenerationError
from formpublisher.types import FieldKind


def embedded_config(script: bytes) -> dict:
    match = re.search(r"var cfg=(\{.*?\});function run", script.decode("utf-8"))
    return json.loads(match.group(1).replace("<\\/", "</"))


@pytest.fixture
def composition():
    c = normalize([make_field(FieldKind.TEXT, "Company", id="company")])
    return pair(c, c.fields[1].id)


class TestArtifactRef:
    """Test artifact references."""

    def test_src_carries_tenant_and_short_digest(self):
        ref = artifact_ref_for("abc123", b"console.log(1)", "/custom-signup.min.js")
        assert len(ref.digest) == 64
        assert ref.src == f"/custom-signup.min.js?pub=abc123&v={ref.digest[:12]}"

    def test_existing_query_is_kept(self):
        ref = artifact_ref_for("abc123", b"x", "https://cdn.example.com/s.js?site=1")
        assert ref.src.startswith("https://cdn.example.com/s.js?site=1&pub=abc123&v=")

    def test_different_content_different_src(self):
        a = artifact_ref_for("t", b"a", "/s.js")
        b = artifact_ref_for("t", b"b", "/s.js")
        assert a.src != b.src
        assert a.to_dict() == {"src": a.src, "digest": a.digest}


class TestGroupRows:
    """Test row grouping."""

    def test_pair_shares_a_row(self, composition):
        rows = group_rows(composition.fields)
        assert len(rows) == 4
        assert rows[0]["pairGroup"] is None
        assert [f["label"] for f in rows[1]["fields"]] == ["Last Name", "Email"]
        assert rows[3]["fields"][0]["id"] == "company"


class TestSignupScriptGenerator:
    """Test script rendering."""

    @pytest.mark.anyio
    async def test_generate_embeds_configuration(self, composition):
        generator = SignupScriptGenerator("signup-root")
        theme = {"title": "Join", "layout": "split"}
        script = await generator.generate(composition.fields, theme)

        assert script.startswith(b"(function(){")
        assert b"action=create_account" in script
        config = embedded_config(script)
        assert config["containerId"] == "signup-root"
        labels = [f["label"] for f in config["fields"]]
        assert labels[:4] == ["First Name", "Last Name", "Email", "Password"]
        assert len(config["rows"]) == 4
        # Split layout without an image falls back to centered.
        assert config["theme"]["layout"] == "center"
        assert len(config["digest"]) == 16

    @pytest.mark.anyio
    async def test_rendering_is_deterministic(self, composition):
        generator = SignupScriptGenerator("signup-root")
        first = await generator.generate(composition.fields, {"title": "Join"})
        second = await generator.generate(composition.fields, {"title": "Join"})
        changed = await generator.generate(composition.fields, {"title": "Welcome"})
        assert first == second
        assert first != changed

    @pytest.mark.anyio
    async def test_script_tag_cannot_be_closed_by_labels(self):
        c = normalize([make_field(FieldKind.TEXT, "</script><b>", id="evil")])
        script = await SignupScriptGenerator("root").generate(c.fields, {})
        assert b"</script>" not in script
        assert embedded_config(script)["fields"][4]["label"] == "</script><b>"

    @pytest.mark.anyio
    async def test_writes_output_file(self, composition, tmp_path):
        target = tmp_path / "dist" / "custom-signup.min.js"
        generator = SignupScriptGenerator("root", output_path=target)
        script = await generator.generate(composition.fields, {})
        assert target.read_bytes() == script

    @pytest.mark.anyio
    async def test_unwritable_output_is_generation_error(self, composition, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        generator = SignupScriptGenerator("root", output_path=blocker / "out.js")
        with pytest.raises(GenerationError):
            await generator.generate(composition.fields, {})

    @pytest.mark.anyio
    async def test_unserializable_theme_is_generation_error(self, composition):
        generator = SignupScriptGenerator("root")
        with pytest.raises(GenerationError):
            await generator.generate(
                composition.fields, {"bad": float("nan"), ("tuple", "key"): 1}
            )
