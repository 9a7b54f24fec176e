"""
Licitação stage editor: the multi-stage state machine of a bidding process.

Stage states, for index i:
    historic      i <  current_stage_index   immutable, viewable
    current       i == current_stage_index   editable while viewed (and not locked)
    not_reached   i >  current_stage_index   inaccessible

viewing_stage_index selects the stage bound to the editing surface and is
always <= current_stage_index.

Signatures:
    - stage 0 ("Início") has one structured signer (signatureName/Role/Sector)
    - later stages embed any number of inline, non-editable signature tags in
      the body; the tag's data-marker "[ASSINATURA: name | role | sector]" is
      the source of truth for who signed

Editing-surface sync (SurfaceBinding): stage state is pushed to the surface
only when the viewed index changes (or the surface is empty on first load);
surface input flows back into the current stage on every change.
"""

from __future__ import annotations

import html
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Callable, Protocol

from app.core.exceptions import StageLockedError, ValidationError

logger = logging.getLogger(__name__)

LICITACAO_STAGES = ("Início", "Etapa 01", "Etapa 02", "Etapa 03", "Etapa 04", "Etapa 05", "Etapa 06")

# Process statuses that freeze the initial stage
LOCKED_STATUSES = frozenset({"approved", "completed"})

# Snapshot content keys owned by StageEditor (written only through to_content)
STAGE_CONTENT_KEYS = (
    "body",
    "signatureName",
    "signatureRole",
    "signatureSector",
    "signatures",
    "licitacaoStages",
    "currentStageIndex",
    "viewingStageIndex",
)

HISTORIC = "historic"
CURRENT = "current"
NOT_REACHED = "not_reached"

_MARKER_RE = re.compile(r'data-marker="\[ASSINATURA: (.*?) \| (.*?) \| (.*?)\]"')
_TAG_RE = re.compile(r"<[^>]+>")


@dataclass(frozen=True)
class Signature:
    name: str
    role: str = ""
    sector: str = ""
    id: str | None = None

    @property
    def marker(self) -> str:
        return f"[ASSINATURA: {self.name} | {self.role} | {self.sector}]"

    @classmethod
    def from_dict(cls, data: dict) -> "Signature":
        return cls(
            name=data.get("name") or "",
            role=data.get("role") or "",
            sector=data.get("sector") or "",
            id=data.get("id"),
        )

    def to_dict(self) -> dict:
        d = {"name": self.name, "role": self.role, "sector": self.sector}
        if self.id:
            d["id"] = self.id
        return d


def signature_tag_html(signature: Signature) -> str:
    """Inline, non-editable tag inserted into a stage body."""
    marker = html.escape(signature.marker, quote=True)
    name = html.escape(signature.name)
    return (
        f'&nbsp;<span contenteditable="false" class="signature-tag" data-marker="{marker}">'
        f'<span class="signature-name">🖊️ {name}</span>'
        f'<span class="signature-delete-btn" title="Remover">✕</span>'
        f"</span><br>&nbsp;"
    )


def _tag_pattern(marker: str):
    escaped = re.escape(html.escape(marker, quote=True))
    return re.compile(
        r"(?:&nbsp;)?<span[^>]*data-marker=\"" + escaped + r"\"[^>]*>"
        r"(?:<span[^>]*>[^<]*</span>){2}</span>(?:<br>&nbsp;)?"
    )


def parse_signatures(body: str) -> tuple:
    """Signatures embedded as tags in *body*, in document order."""
    return tuple(
        Signature(html.unescape(n), html.unescape(r), html.unescape(s))
        for n, r, s in _MARKER_RE.findall(body or "")
    )


def has_text(body: str) -> bool:
    text = _TAG_RE.sub("", body or "").replace("&nbsp;", " ")
    return bool(text.strip())


@dataclass(frozen=True)
class Stage:
    """A finalized stage. Never modified after advancing past it."""

    id: str
    title: str
    body: str
    signature_name: str | None = None
    signature_role: str | None = None
    signature_sector: str | None = None
    signatures: tuple = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: dict) -> "Stage":
        return cls(
            id=data.get("id") or f"stage-{uuid.uuid4().hex[:8]}",
            title=data.get("title") or "",
            body=data.get("body") or "",
            signature_name=data.get("signatureName"),
            signature_role=data.get("signatureRole"),
            signature_sector=data.get("signatureSector"),
            signatures=tuple(Signature.from_dict(s) for s in data.get("signatures") or []),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "signatureName": self.signature_name,
            "signatureRole": self.signature_role,
            "signatureSector": self.signature_sector,
            "signatures": [s.to_dict() for s in self.signatures],
        }


# ═══════════════════════════════════════════════════════════════════════════
#  State machine
# ═══════════════════════════════════════════════════════════════════════════


class StageEditor:
    def __init__(self, content: dict | None = None, status: str | None = None,
                 stage_titles=LICITACAO_STAGES):
        content = content or {}
        self.stage_titles = tuple(stage_titles)
        self.status = status or "pending"

        historic = [Stage.from_dict(s) for s in content.get("licitacaoStages") or []]
        current = int(content.get("currentStageIndex") or 0)
        if current > len(historic):
            logger.warning("currentStageIndex %d without history; clamping to %d", current, len(historic))
            current = len(historic)
        current = min(current, len(self.stage_titles) - 1)
        self._historic: list[Stage] = historic[:current]
        self._current = current

        viewing = content.get("viewingStageIndex")
        viewing = current if viewing is None else int(viewing)
        self._viewing = max(0, min(viewing, current))

        self._body: str = content.get("body") or ""
        self._signer: Signature | None = None
        if current == 0 and content.get("signatureName"):
            self._signer = Signature(
                content["signatureName"],
                content.get("signatureRole") or "",
                content.get("signatureSector") or "",
            )

    # ── Indices / state ──────────────────────────────────────────────────

    @property
    def current_stage_index(self) -> int:
        return self._current

    @property
    def viewing_stage_index(self) -> int:
        return self._viewing

    @property
    def current_stage_title(self) -> str:
        return self.stage_titles[self._current]

    @property
    def is_last_stage(self) -> bool:
        return self._current >= len(self.stage_titles) - 1

    @property
    def is_locked(self) -> bool:
        """Initial stage frozen by process approval."""
        return self._current == 0 and self.status in LOCKED_STATUSES

    @property
    def initial_signer(self) -> Signature | None:
        if self._current == 0:
            return self._signer
        first = self._historic[0]
        if not first.signature_name:
            return None
        return Signature(first.signature_name, first.signature_role or "", first.signature_sector or "")

    def stage_state(self, index: int) -> str:
        if index < self._current:
            return HISTORIC
        if index == self._current:
            return CURRENT
        return NOT_REACHED

    def is_editable(self) -> bool:
        return self._viewing == self._current and not self.is_locked

    def stage_body(self, index: int) -> str:
        state = self.stage_state(index)
        if state == HISTORIC:
            return self._historic[index].body
        if state == CURRENT:
            return self._body
        raise ValidationError(f"Stage {index} not reached yet", details={"stage_index": index})

    def signature_markers(self, index: int) -> list[str]:
        if index == 0:
            signer = self.initial_signer
            return [signer.marker] if signer else []
        return [s.marker for s in parse_signatures(self.stage_body(index))]

    def all_stages(self) -> list[dict]:
        """Every reached stage (historic then current) in the Stage dict shape."""
        stages = [s.to_dict() for s in self._historic]
        stages.append(self._current_stage().to_dict())
        return stages

    def _current_stage(self) -> Stage:
        signer = self._signer if self._current == 0 else None
        return Stage(
            id=f"stage-{self._current}",
            title=self.current_stage_title,
            body=self._body,
            signature_name=signer.name if signer else None,
            signature_role=signer.role if signer else None,
            signature_sector=signer.sector if signer else None,
            signatures=() if self._current == 0 else parse_signatures(self._body),
        )

    # ── Transitions ──────────────────────────────────────────────────────

    def view_stage(self, index: int) -> None:
        if not 0 <= index <= self._current:
            raise ValidationError(
                f"Stage {index} cannot be viewed",
                details={"stage_index": index, "current_stage_index": self._current},
            )
        self._viewing = index

    def _require_editable(self, index: int) -> None:
        if index < self._current:
            raise StageLockedError(index, "historic")
        if index > self._current:
            raise ValidationError(f"Stage {index} not reached yet", details={"stage_index": index})
        if self._viewing != self._current:
            raise StageLockedError(index, "not_viewing_current")
        if self.is_locked:
            raise StageLockedError(index, "approved_lock")

    def edit_current_stage_body(self, body: str) -> None:
        self._require_editable(self._current)
        self._body = body or ""

    def edit_stage_body(self, index: int, body: str) -> None:
        """Write *body* to stage *index*; only the viewed current stage accepts it."""
        self._require_editable(index)
        self._body = body or ""

    def set_initial_signer(self, signature: Signature | None) -> None:
        if self._current != 0:
            raise StageLockedError(0, "historic")
        self._require_editable(0)
        self._signer = signature

    def append_signature_tag(self, signature: Signature) -> str:
        if self._current == 0:
            raise ValidationError(
                "The initial stage takes a single structured signer",
                details={"stage_index": 0},
            )
        self._require_editable(self._current)
        self._body = (self._body or "") + signature_tag_html(signature)
        return self._body

    def remove_signature_tag(self, marker: str) -> bool:
        self._require_editable(self._current)
        new_body, removed = _tag_pattern(marker).subn("", self._body, count=1)
        if removed:
            self._body = new_body
        return bool(removed)

    def advance_stage(self) -> Stage:
        """Finalize the current stage and move to the next one.

        Returns the finalized stage. The viewed stage follows the new
        current stage.
        """
        errors = {}
        if not has_text(self._body):
            errors["body"] = "empty"
        if self._current == 0 and self._signer is None:
            errors["signature"] = "missing"
        if self.is_last_stage:
            errors["stage"] = "last"
        if errors:
            raise ValidationError("Stage cannot be advanced yet", details=errors)

        finalized = self._current_stage()
        self._historic.append(finalized)
        self._current += 1
        self._viewing = self._current
        self._body = ""
        self._signer = None
        logger.info("Licitação advanced to %s", self.current_stage_title)
        return finalized

    # ── Serialization ────────────────────────────────────────────────────

    def to_content(self, base: dict | None = None) -> dict:
        """Editor state merged into a snapshot `content` dict."""
        content = dict(base or {})
        signer = self._signer if self._current == 0 else None
        content.update({
            "body": self._body,
            "signatureName": signer.name if signer else None,
            "signatureRole": signer.role if signer else None,
            "signatureSector": signer.sector if signer else None,
            "signatures": [s.to_dict() for s in self._current_stage().signatures],
            "licitacaoStages": [s.to_dict() for s in self._historic],
            "currentStageIndex": self._current,
            "viewingStageIndex": self._viewing,
        })
        return content

    def initial_stage_snapshot(self, base: dict | None = None) -> dict:
        """Content reduced to the "Início" stage, as exported for download."""
        if self._current == 0:
            stage0 = self._current_stage()
        else:
            stage0 = self._historic[0]
        content = dict(base or {})
        content.update({
            "currentStageIndex": 0,
            "viewingStageIndex": 0,
            "body": stage0.body,
            "signatureName": stage0.signature_name,
            "signatureRole": stage0.signature_role,
            "signatureSector": stage0.signature_sector,
            "signatures": [s.to_dict() for s in stage0.signatures],
            "licitacaoStages": [{"id": "stage-0", "title": self.stage_titles[0], "body": stage0.body}],
        })
        return content


# ═══════════════════════════════════════════════════════════════════════════
#  Editing surface
# ═══════════════════════════════════════════════════════════════════════════


class RichTextSurface(Protocol):
    def get_content(self) -> str: ...
    def set_content(self, html: str) -> None: ...
    def on_change(self, callback: Callable[[str], None]) -> None: ...
    def set_editable(self, editable: bool) -> None: ...


class InMemorySurface:
    """Headless RichTextSurface. `type()` simulates user input."""

    def __init__(self, content: str = ""):
        self.content = content
        self.editable = True
        self.reloads = 0
        self._listeners: list[Callable[[str], None]] = []

    def get_content(self) -> str:
        return self.content

    def set_content(self, html: str) -> None:
        self.content = html
        self.reloads += 1

    def on_change(self, callback: Callable[[str], None]) -> None:
        self._listeners.append(callback)

    def set_editable(self, editable: bool) -> None:
        self.editable = editable

    def type(self, html: str) -> bool:
        if not self.editable:
            return False
        self.content = html
        for cb in list(self._listeners):
            cb(html)
        return True


class SurfaceBinding:
    """One-directional sync between a StageEditor and a RichTextSurface."""

    def __init__(self, editor: StageEditor, surface: RichTextSurface):
        self.editor = editor
        self.surface = surface
        self.last_synced_index: int | None = None
        surface.on_change(self._on_input)
        self.sync()

    def sync(self) -> bool:
        """Reload the surface if the viewed stage changed; returns True on reload."""
        index = self.editor.viewing_stage_index
        body = self.editor.stage_body(index)
        stage_changed = index != self.last_synced_index
        first_fill = not self.surface.get_content() and bool(body)

        reloaded = False
        if stage_changed or first_fill:
            self.surface.set_content(body)
            reloaded = True
        self.surface.set_editable(self.editor.is_editable())
        self.last_synced_index = index
        return reloaded

    def _on_input(self, html: str) -> None:
        if not self.editor.is_editable():
            logger.debug("Ignoring input on read-only stage %d", self.editor.viewing_stage_index)
            return
        self.editor.edit_current_stage_body(html)

    def navigate(self, index: int) -> bool:
        self.editor.view_stage(index)
        return self.sync()

    def advance(self) -> Stage:
        finalized = self.editor.advance_stage()
        self.sync()
        return finalized

    def insert_signature(self, signature: Signature) -> None:
        body = self.editor.append_signature_tag(signature)
        self.surface.set_content(body)

    def remove_signature(self, marker: str) -> bool:
        removed = self.editor.remove_signature_tag(marker)
        if removed:
            self.surface.set_content(self.editor.stage_body(self.editor.current_stage_index))
        return removed
