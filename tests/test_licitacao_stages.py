"""
Tests: licitação stage editor state machine and editing-surface binding.

Covers:
    - historic / current / not-reached stage rules
    - approval lock on the initial stage
    - advance validation (body, initial signer, last stage)
    - inline signature tags on later stages
    - surface sync: reload only on stage change, no lost keystrokes
    - serialization round trip and "Início" export
"""

import pytest

from app.core.exceptions import StageLockedError, ValidationError
from app.services.licitacao_stages import (
    CURRENT,
    HISTORIC,
    LICITACAO_STAGES,
    NOT_REACHED,
    InMemorySurface,
    Signature,
    StageEditor,
    SurfaceBinding,
    has_text,
    parse_signatures,
    signature_tag_html,
)

SIGNER = Signature("Ana Souza", "Secretária", "Administração")


def _editor_at_stage(n, status="pending"):
    editor = StageEditor(status=status)
    editor.edit_current_stage_body("<p>Abertura</p>")
    editor.set_initial_signer(SIGNER)
    for i in range(n):
        if i > 0:
            editor.edit_current_stage_body(f"<p>Etapa {i}</p>")
        editor.advance_stage()
    return editor


# ═════════════════════════════════════════════════════════════════════════════
# STATE MACHINE
# ═════════════════════════════════════════════════════════════════════════════

class TestStageStates:
    def test_new_process_starts_at_inicio(self):
        editor = StageEditor()
        assert editor.current_stage_index == 0
        assert editor.current_stage_title == "Início"
        assert editor.is_editable()

    def test_stage_states(self):
        editor = _editor_at_stage(2)
        assert editor.stage_state(0) == HISTORIC
        assert editor.stage_state(1) == HISTORIC
        assert editor.stage_state(2) == CURRENT
        assert editor.stage_state(3) == NOT_REACHED

    def test_historic_stage_is_read_only(self):
        editor = _editor_at_stage(1)
        with pytest.raises(StageLockedError) as exc_info:
            editor.edit_stage_body(0, "<p>alterado</p>")
        assert exc_info.value.reason == "historic"
        assert editor.stage_body(0) == "<p>Abertura</p>"

    def test_not_reached_stage_is_inaccessible(self):
        editor = _editor_at_stage(1)
        with pytest.raises(ValidationError):
            editor.stage_body(3)
        with pytest.raises(ValidationError):
            editor.view_stage(2)
        with pytest.raises(ValidationError):
            editor.edit_stage_body(2, "x")

    def test_viewing_historic_blocks_current_edits(self):
        editor = _editor_at_stage(1)
        editor.view_stage(0)
        assert not editor.is_editable()
        with pytest.raises(StageLockedError) as exc_info:
            editor.edit_current_stage_body("<p>x</p>")
        assert exc_info.value.reason == "not_viewing_current"

    def test_approved_process_locks_initial_stage(self):
        editor = StageEditor({"body": "<p>Abertura</p>"}, status="approved")
        assert editor.is_locked
        assert not editor.is_editable()
        with pytest.raises(StageLockedError) as exc_info:
            editor.edit_current_stage_body("<p>x</p>")
        assert exc_info.value.reason == "approved_lock"

    def test_approval_does_not_lock_later_stages(self):
        editor = _editor_at_stage(1, status="approved")
        assert not editor.is_locked
        editor.edit_current_stage_body("<p>Etapa 01</p>")

    def test_signer_only_on_initial_stage(self):
        editor = _editor_at_stage(1)
        with pytest.raises(StageLockedError):
            editor.set_initial_signer(SIGNER)
        assert editor.initial_signer == Signature(SIGNER.name, SIGNER.role, SIGNER.sector)


# ═════════════════════════════════════════════════════════════════════════════
# ADVANCE
# ═════════════════════════════════════════════════════════════════════════════

class TestAdvance:
    def test_advance_requires_body_and_signer(self):
        editor = StageEditor()
        with pytest.raises(ValidationError) as exc_info:
            editor.advance_stage()
        assert exc_info.value.details == {"body": "empty", "signature": "missing"}
        assert editor.current_stage_index == 0

    def test_body_of_only_markup_is_empty(self):
        assert not has_text("<p>&nbsp;</p><br>")
        assert has_text("<p>texto</p>")

    def test_advance_finalizes_and_moves_viewing(self):
        editor = StageEditor()
        editor.edit_current_stage_body("<p>Abertura</p>")
        editor.set_initial_signer(SIGNER)
        editor.view_stage(0)
        finalized = editor.advance_stage()

        assert finalized.title == "Início"
        assert finalized.signature_name == "Ana Souza"
        assert editor.current_stage_index == 1
        assert editor.viewing_stage_index == 1
        assert editor.stage_body(1) == ""
        assert editor.is_editable()

    def test_later_stages_need_only_body(self):
        editor = _editor_at_stage(1)
        editor.edit_current_stage_body("<p>Pesquisa de preços</p>")
        assert editor.advance_stage().title == "Etapa 01"

    def test_last_stage_cannot_advance(self):
        last = len(LICITACAO_STAGES) - 1
        editor = _editor_at_stage(last)
        assert editor.is_last_stage
        editor.edit_current_stage_body("<p>Homologação</p>")
        with pytest.raises(ValidationError) as exc_info:
            editor.advance_stage()
        assert exc_info.value.details == {"stage": "last"}


# ═════════════════════════════════════════════════════════════════════════════
# SIGNATURES
# ═════════════════════════════════════════════════════════════════════════════

class TestSignatureTags:
    def test_tag_shape(self):
        tag = signature_tag_html(SIGNER)
        assert 'contenteditable="false"' in tag
        assert 'data-marker="[ASSINATURA: Ana Souza | Secretária | Administração]"' in tag
        assert "signature-delete-btn" in tag

    def test_append_and_parse(self):
        editor = _editor_at_stage(1)
        editor.edit_current_stage_body("<p>Parecer</p>")
        editor.append_signature_tag(SIGNER)
        editor.append_signature_tag(Signature("Bruno Lima", "Assessor", "Jurídico"))

        assert editor.signature_markers(1) == [
            "[ASSINATURA: Ana Souza | Secretária | Administração]",
            "[ASSINATURA: Bruno Lima | Assessor | Jurídico]",
        ]
        assert [s.name for s in parse_signatures(editor.stage_body(1))] == ["Ana Souza", "Bruno Lima"]

    def test_remove_tag(self):
        editor = _editor_at_stage(1)
        editor.edit_current_stage_body("<p>Parecer</p>")
        editor.append_signature_tag(SIGNER)
        assert editor.remove_signature_tag(SIGNER.marker) is True
        assert editor.stage_body(1) == "<p>Parecer</p>"
        assert editor.remove_signature_tag(SIGNER.marker) is False

    def test_initial_stage_rejects_inline_tags(self):
        with pytest.raises(ValidationError):
            StageEditor().append_signature_tag(SIGNER)

    def test_finalized_stage_keeps_signatures(self):
        editor = _editor_at_stage(1)
        editor.edit_current_stage_body("<p>Parecer</p>")
        editor.append_signature_tag(SIGNER)
        finalized = editor.advance_stage()
        assert finalized.signatures == (SIGNER,)
        assert editor.signature_markers(1) == [SIGNER.marker]


# ═════════════════════════════════════════════════════════════════════════════
# SERIALIZATION
# ═════════════════════════════════════════════════════════════════════════════

class TestSerialization:
    def test_round_trip(self):
        editor = _editor_at_stage(2)
        editor.edit_current_stage_body("<p>Em andamento</p>")
        editor.view_stage(1)
        content = editor.to_content({"requesterSector": "Administração"})

        restored = StageEditor(content)
        assert content["requesterSector"] == "Administração"
        assert restored.current_stage_index == 2
        assert restored.viewing_stage_index == 1
        assert restored.stage_body(2) == "<p>Em andamento</p>"
        assert [s["title"] for s in restored.all_stages()] == ["Início", "Etapa 01", "Etapa 02"]
        assert restored.initial_signer.name == "Ana Souza"

    def test_current_index_clamped_to_history(self):
        editor = StageEditor({"currentStageIndex": 4, "licitacaoStages": [{"title": "Início", "body": "x"}]})
        assert editor.current_stage_index == 1

    def test_initial_stage_export(self):
        editor = _editor_at_stage(2)
        exported = editor.initial_stage_snapshot({"requesterSector": "Administração"})
        assert exported["currentStageIndex"] == 0
        assert exported["body"] == "<p>Abertura</p>"
        assert exported["signatureName"] == "Ana Souza"
        assert exported["licitacaoStages"] == [{"id": "stage-0", "title": "Início", "body": "<p>Abertura</p>"}]


# ═════════════════════════════════════════════════════════════════════════════
# SURFACE BINDING
# ═════════════════════════════════════════════════════════════════════════════

class TestSurfaceBinding:
    def test_typing_never_reloads_surface(self):
        editor = StageEditor()
        surface = InMemorySurface()
        binding = SurfaceBinding(editor, surface)
        reloads = surface.reloads

        for text in ("<p>A</p>", "<p>Ab</p>", "<p>Abc</p>"):
            assert surface.type(text)
            binding.sync()

        assert surface.reloads == reloads
        assert editor.stage_body(0) == "<p>Abc</p>"
        assert surface.content == "<p>Abc</p>"

    def test_navigation_reloads_and_toggles_editable(self):
        editor = _editor_at_stage(1)
        surface = InMemorySurface()
        binding = SurfaceBinding(editor, surface)
        surface.type("<p>rascunho</p>")

        assert binding.navigate(0) is True
        assert surface.content == "<p>Abertura</p>"
        assert surface.editable is False
        assert surface.type("<p>hack</p>") is False
        assert editor.stage_body(0) == "<p>Abertura</p>"

        assert binding.navigate(1) is True
        assert surface.content == "<p>rascunho</p>"
        assert surface.editable is True

    def test_advance_clears_surface(self):
        editor = StageEditor()
        surface = InMemorySurface()
        binding = SurfaceBinding(editor, surface)
        surface.type("<p>Abertura</p>")
        editor.set_initial_signer(SIGNER)

        binding.advance()
        assert surface.content == ""
        assert binding.last_synced_index == 1

    def test_initial_fill_of_empty_surface(self):
        editor = StageEditor({"body": "<p>salvo</p>"})
        surface = InMemorySurface()
        SurfaceBinding(editor, surface)
        assert surface.content == "<p>salvo</p>"

    def test_insert_and_remove_signature_via_binding(self):
        editor = _editor_at_stage(1)
        surface = InMemorySurface()
        binding = SurfaceBinding(editor, surface)
        surface.type("<p>Parecer</p>")
        binding.insert_signature(SIGNER)
        assert SIGNER.marker in surface.content
        assert binding.remove_signature(SIGNER.marker)
        assert surface.content == "<p>Parecer</p>"

    def test_locked_surface_is_read_only(self):
        editor = StageEditor({"body": "<p>Aprovado</p>"}, status="completed")
        surface = InMemorySurface()
        SurfaceBinding(editor, surface)
        assert surface.editable is False
