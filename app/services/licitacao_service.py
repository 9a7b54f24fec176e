"""
Licitação service: persistence around StageEditor.

Each operation loads the process, applies one editor transition and writes
the editor state back into document_snapshot.content. The `stage` column
mirrors the title of the current stage; `requesting_sector` mirrors
content.requesterSector.
"""

from __future__ import annotations

import copy
import logging

from app.models import db
from app.services import document_service
from app.services.licitacao_stages import Signature, StageEditor

logger = logging.getLogger(__name__)

BLOCK = "licitacao"


def load_editor(process_id):
    """Return (process, StageEditor) for a stored process."""
    process = document_service.get_document(BLOCK, process_id)
    return process, StageEditor(process.content, status=process.status)


def save_editor(process, editor: StageEditor):
    snapshot = copy.deepcopy(process.document_snapshot or {})
    content = editor.to_content(snapshot.get("content"))
    snapshot["content"] = content
    process.document_snapshot = snapshot
    process.stage = editor.current_stage_title
    if content.get("requesterSector"):
        process.requesting_sector = content["requesterSector"]
    db.session.commit()
    return process


def process_view(process, editor: StageEditor) -> dict:
    data = process.to_dict()
    data.update({
        "stages": editor.all_stages(),
        "stage_titles": list(editor.stage_titles),
        "current_stage_index": editor.current_stage_index,
        "viewing_stage_index": editor.viewing_stage_index,
        "viewing_body": editor.stage_body(editor.viewing_stage_index),
        "editable": editor.is_editable(),
        "locked": editor.is_locked,
    })
    return data


def get_process(process_id) -> dict:
    process, editor = load_editor(process_id)
    return process_view(process, editor)


def view_stage(process_id, index: int) -> dict:
    process, editor = load_editor(process_id)
    editor.view_stage(index)
    return process_view(save_editor(process, editor), editor)


def update_stage_body(process_id, body: str, stage_index: int | None = None) -> dict:
    process, editor = load_editor(process_id)
    if stage_index is None:
        editor.edit_current_stage_body(body)
    else:
        editor.edit_stage_body(stage_index, body)
    return process_view(save_editor(process, editor), editor)


def advance_stage(process_id, by=None) -> dict:
    process, editor = load_editor(process_id)
    finalized = editor.advance_stage()
    save_editor(process, editor)
    logger.info(
        "Licitação %s finalized %s", process.protocol, finalized.title,
        extra={"protocol": process.protocol, "user_id": by},
    )
    return process_view(process, editor)


def set_initial_signer(process_id, signature: dict | None) -> dict:
    process, editor = load_editor(process_id)
    editor.set_initial_signer(Signature.from_dict(signature) if signature else None)
    return process_view(save_editor(process, editor), editor)


def add_signature(process_id, signature: dict) -> dict:
    process, editor = load_editor(process_id)
    editor.append_signature_tag(Signature.from_dict(signature))
    return process_view(save_editor(process, editor), editor)


def remove_signature(process_id, marker: str) -> tuple[dict, bool]:
    process, editor = load_editor(process_id)
    removed = editor.remove_signature_tag(marker)
    if removed:
        save_editor(process, editor)
    return process_view(process, editor), removed


def update_status(process_id, status, by=None, note=None) -> dict:
    process = document_service.update_status(BLOCK, process_id, status, by=by, note=note)
    return process_view(process, StageEditor(process.content, status=process.status))


def export_initial_stage(process_id) -> dict:
    """Snapshot reduced to the "Início" stage, for the download flow."""
    process, editor = load_editor(process_id)
    snapshot = copy.deepcopy(process.document_snapshot or {})
    snapshot["content"] = editor.initial_stage_snapshot(snapshot.get("content"))
    return snapshot
