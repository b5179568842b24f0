"""Tests for version association rows."""
from sqlalchemy import select

from recordtrail import Version, VersionAssociation, switches
from tests.models import Author, Book, Comment, Widget


def _associations(db, item):
    version = db.execute(
        select(Version)
        .where(Version.item_type == type(item).__name__, Version.item_id == str(item.id))
        .order_by(Version.id.desc())
    ).scalars().first()
    return db.execute(
        select(VersionAssociation).where(VersionAssociation.version_id == version.id)
    ).scalars().all()


class TestBelongsTo:
    def test_disabled_by_default(self, db):
        author = Author(name="Le Guin")
        book = Book(title="The Dispossessed", author=author)
        db.add(book)
        db.commit()
        assert _associations(db, book) == []

    def test_records_foreign_key(self, db):
        switches.set_track_associations(True)
        author = Author(name="Le Guin")
        db.add(author)
        db.commit()

        book = Book(title="The Dispossessed", author=author)
        db.add(book)
        db.commit()

        [link] = _associations(db, book)
        assert link.foreign_key_name == "author_id"
        assert link.foreign_key_id == str(author.id)

    def test_skips_disabled_target(self, db):
        switches.set_track_associations(True)
        switches.set_enabled_for("Author", False)
        book = Book(title="Solaris", author=Author(name="Lem"))
        db.add(book)
        db.commit()
        assert _associations(db, book) == []


class TestPolymorphic:
    def test_resolvable_target(self, db):
        switches.set_track_associations(True)
        widget = Widget(name="Anvil")
        db.add(widget)
        db.commit()

        comment = Comment(body="heavy", commentable_type="Widget", commentable_id=widget.id)
        db.add(comment)
        db.commit()

        [link] = _associations(db, comment)
        assert link.foreign_key_name == "commentable_id"
        assert link.foreign_key_id == str(widget.id)

    def test_missing_target_is_not_linked(self, db):
        switches.set_track_associations(True)
        comment = Comment(body="orphan", commentable_type="Widget", commentable_id=9999)
        db.add(comment)
        db.commit()
        assert _associations(db, comment) == []

    def test_untracked_type_is_not_linked(self, db):
        switches.set_track_associations(True)
        comment = Comment(body="?", commentable_type="Nothing", commentable_id=1)
        db.add(comment)
        db.commit()
        assert _associations(db, comment) == []
