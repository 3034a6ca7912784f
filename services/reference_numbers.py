"""Order approval reference numbers: YYYY-NNNNN, sequential per year."""
import datetime

from models import ReferenceNumberSequence

SEQUENCE_DIGITS = 5


def format_reference_number(year, sequence):
    return f"{year}-{str(sequence).zfill(SEQUENCE_DIGITS)}"


def generate_reference_number(db, year=None):
    """
    Reserve the next number for the year.

    Runs inside the caller's transaction: the sequence row is locked
    (SELECT ... FOR UPDATE on PostgreSQL) and incremented, so numbers are
    never handed out twice and never reused, even after a delete.
    """
    year = year or datetime.datetime.now().year
    seq = (
        db.query(ReferenceNumberSequence)
        .filter(ReferenceNumberSequence.year == year)
        .with_for_update()
        .first()
    )
    if seq is None:
        seq = ReferenceNumberSequence(year=year, last_sequence=0)
        db.add(seq)

    seq.last_sequence = (seq.last_sequence or 0) + 1
    seq.updated_at = datetime.datetime.now()
    db.flush()
    return format_reference_number(year, seq.last_sequence)


def get_current_sequence(db, year=None):
    """Last sequence handed out for the year, 0 if none yet."""
    year = year or datetime.datetime.now().year
    seq = db.query(ReferenceNumberSequence).filter(ReferenceNumberSequence.year == year).first()
    return seq.last_sequence if seq else 0
