import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..errors import Forbidden, NotFound
from ..models import Note, User
from ..schemas import MessageOut, NoteEnvelopeOut, NoteIn, NoteOut, NotesListOut


router = APIRouter(prefix="/notes", tags=["notes"])


def _owned_note(db: Session, note_id: str, user: User) -> Note:
    try:
        nid = uuid.UUID(note_id)
    except ValueError:
        raise NotFound("Note not found")
    note = db.get(Note, nid)
    if note is None:
        raise NotFound("Note not found")
    if note.user_id != user.id:
        raise Forbidden("Access denied")
    return note


@router.get("", response_model=NotesListOut)
def list_notes(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    rows = (
        db.query(Note)
        .filter(Note.user_id == user.id)
        .order_by(Note.updated_at.desc(), Note.created_at.desc())
        .all()
    )
    return NotesListOut(notes=[NoteOut.model_validate(n) for n in rows])


@router.post("", response_model=NoteEnvelopeOut, status_code=status.HTTP_201_CREATED)
def create_note(payload: NoteIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    note = Note(user_id=user.id, title=payload.title, content=payload.content)
    db.add(note)
    db.flush()
    db.refresh(note)
    return NoteEnvelopeOut(message="Note created successfully", note=NoteOut.model_validate(note))


@router.get("/{note_id}", response_model=NoteOut)
def get_note(note_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return NoteOut.model_validate(_owned_note(db, note_id, user))


@router.put("/{note_id}", response_model=NoteEnvelopeOut)
def update_note(note_id: str, payload: NoteIn, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    note = _owned_note(db, note_id, user)
    note.title = payload.title
    note.content = payload.content
    note.updated_at = datetime.utcnow()
    db.flush()
    return NoteEnvelopeOut(message="Note updated successfully", note=NoteOut.model_validate(note))


@router.delete("/{note_id}", response_model=MessageOut)
def delete_note(note_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    note = _owned_note(db, note_id, user)
    db.delete(note)
    return MessageOut(message="Note deleted successfully")
