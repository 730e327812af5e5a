"""Tests for the Firestore store's document layout and org scoping."""

from unittest.mock import MagicMock

import pytest

from complyflow.errors import AuthorizationError, NotFoundError
from complyflow.schemas import ExtractionRun
from complyflow.storage.firestore import RUNS, FirestoreStore, to_doc

from .factories import ORG, OTHER_ORG


def _db_returning(data=None):
    """A Firestore client double whose every document read returns `data`."""
    db = MagicMock()
    snapshot = MagicMock()
    snapshot.exists = data is not None
    snapshot.to_dict.return_value = data
    db.collection.return_value.document.return_value.get.return_value = snapshot
    return db


class TestFirestoreLayout:
    """Entities live in top-level collections stamped with their org."""

    def test_run_written_to_top_level_collection(self):
        """A new run is created in the runs collection with its org_id on the document."""
        db = _db_returning()
        run = ExtractionRun(org_id=ORG, certificate_id="cert_1", document_type="GAS_SAFETY")

        FirestoreStore(db=db).create_run(run)

        db.collection.assert_called_with(RUNS)
        db.collection.return_value.document.assert_called_with(run.run_id)
        written = db.collection.return_value.document.return_value.create.call_args[0][0]
        assert written["org_id"] == ORG

    def test_other_org_read_is_authorization_error(self):
        """A run stored for another org is refused, not reported missing."""
        run = ExtractionRun(org_id=OTHER_ORG, certificate_id="cert_1", document_type="GAS_SAFETY")
        store = FirestoreStore(db=_db_returning(to_doc(run)))

        with pytest.raises(AuthorizationError):
            store.get_run(ORG, run.run_id)

    def test_own_run_is_returned(self):
        """A run stored for the caller's org round-trips through the document."""
        run = ExtractionRun(org_id=ORG, certificate_id="cert_1", document_type="GAS_SAFETY")
        store = FirestoreStore(db=_db_returning(to_doc(run)))

        assert store.get_run(ORG, run.run_id).certificate_id == "cert_1"

    def test_missing_run_is_not_found(self):
        """An absent document raises NotFoundError."""
        with pytest.raises(NotFoundError):
            FirestoreStore(db=_db_returning()).get_run(ORG, "run_missing")
