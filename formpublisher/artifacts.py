"""Artifact generation: the storefront script that serves a published form.

The orchestrator only needs ``async generate(fields, theme) -> bytes``. The
default SignupScriptGenerator embeds the form configuration (fields, row
groups, normalized theme) as JSON inside a self-contained bootstrap script
that mounts the form on the storefront's create-account page.

An ArtifactRef is what gets registered with the script registry: the script
URL plus a digest of the generated bytes, so every republish busts caches.
"""

import asyncio
from dataclasses import dataclass
import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Union

import httpx

from formpublisher.composition import normalize_theme_layout
from formpublisher.errors import GenerationError
from formpublisher.types import Field

logger = logging.getLogger(__name__)


class ArtifactGenerator(Protocol):
    async def generate(
        self, fields: Sequence[Field], theme: Mapping[str, Any]
    ) -> bytes:
        ...


@dataclass(frozen=True)
class ArtifactRef:
    """Where a generated artifact is served from.

    Attributes:
        src: Script URL registered with the storefront
        digest: SHA-256 of the artifact bytes (hex)
    """
    src: str
    digest: str

    def to_dict(self) -> Dict[str, Any]:
        return {"src": self.src, "digest": self.digest}


def artifact_ref_for(tenant: str, content: bytes, base_src: str) -> ArtifactRef:
    """Build the reference of ``content`` for ``tenant``.

    Examples:
        >>> ref = artifact_ref_for("abc123", b"x", "/custom-signup.min.js")
        >>> ref.src.startswith("/custom-signup.min.js?pub=abc123&v=")
        True
    """
    digest = hashlib.sha256(content).hexdigest()
    url = httpx.URL(base_src).copy_merge_params({"pub": tenant, "v": digest[:12]})
    return ArtifactRef(src=str(url), digest=digest)


def group_rows(fields: Sequence[Field]) -> List[Dict[str, Any]]:
    """Group fields into render rows: a pair shares one row, others get their own."""
    rows: List[Dict[str, Any]] = []
    seen = set()
    for f in fields:
        if f.id in seen:
            continue
        if f.pair_group is None:
            rows.append({"pairGroup": None, "fields": [f.to_dict()]})
            seen.add(f.id)
            continue
        members = [m for m in fields if m.pair_group == f.pair_group]
        rows.append(
            {"pairGroup": f.pair_group, "fields": [m.to_dict() for m in members]}
        )
        seen.update(m.id for m in members)
    return rows


_SCRIPT_TEMPLATE = (
    "(function(){"
    "var cfg=%(config)s;"
    "function run(){"
    "var u=window.location;"
    "if(!/\\/login\\.php$/i.test(u.pathname)||"
    "!/(^|[?&])action=create_account(&|$)/i.test(u.search||''))return;"
    "var d=document,root=d.getElementById(cfg.containerId);"
    "if(!root){root=d.createElement('div');root.id=cfg.containerId;"
    "d.body.appendChild(root);}"
    "root.setAttribute('data-form-digest',cfg.digest);"
    "window.CustomSignupForm=cfg;"
    "root.dispatchEvent("
    "new CustomEvent('custom-signup:config',{detail:cfg,bubbles:true}));"
    "}"
    "if(document.readyState==='loading')"
    "{document.addEventListener('DOMContentLoaded',run);}else{run();}"
    "})();"
)


class SignupScriptGenerator:
    """Render the storefront signup script for a composition.

    Args:
        container_id: DOM id of the element the form mounts into
        output_path: When set, every generated script is also written there

    Examples:
        >>> import asyncio
        >>> from formpublisher.composition import normalize
        >>> gen = SignupScriptGenerator("custom-signup-container")
        >>> script = asyncio.run(gen.generate(normalize([]).fields, {}))
        >>> script.startswith(b"(function(){")
        True
    """

    def __init__(
        self, container_id: str, output_path: Optional[Union[str, Path]] = None
    ):
        self.container_id = container_id
        self.output_path = Path(output_path) if output_path else None

    def render(self, fields: Sequence[Field], theme: Mapping[str, Any]) -> str:
        body = {
            "containerId": self.container_id,
            "fields": [f.to_dict() for f in fields],
            "rows": group_rows(fields),
            "theme": normalize_theme_layout(dict(theme or {})),
        }
        # Digest of the configuration only, so identical forms render identically.
        encoded = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
        body["digest"] = hashlib.sha256(encoded.encode("utf-8")).hexdigest()[:16]
        config = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
        # Keep the embedded JSON from closing the surrounding <script> tag.
        config = config.replace("</", "<\\/")
        return _SCRIPT_TEMPLATE % {"config": config}

    async def generate(
        self, fields: Sequence[Field], theme: Mapping[str, Any]
    ) -> bytes:
        """Render the script, writing it to ``output_path`` when configured.

        Raises:
            GenerationError: If rendering or writing fails
        """
        try:
            content = self.render(fields, theme).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise GenerationError(f"Failed to render signup script: {e}") from e

        if self.output_path is not None:
            try:
                await asyncio.to_thread(self._write, content)
            except OSError as e:
                raise GenerationError(
                    f"Failed to write signup script: {e}", path=str(self.output_path)
                ) from e
            logger.info(
                f"Signup script written to {self.output_path} ({len(content)} bytes)"
            )
        return content

    def _write(self, content: bytes) -> None:
        self.output_path.parent.mkdir(parents=True, exist_ok=True)
        self.output_path.write_bytes(content)


__all__ = [
    "ArtifactGenerator",
    "ArtifactRef",
    "artifact_ref_for",
    "group_rows",
    "SignupScriptGenerator",
]
