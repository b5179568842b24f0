"""Tests for version writing on create, update and destroy.

Covers:
- create / update / destroy version contents
- ignore and skip rules applied through the ORM
- meta values, ambient metadata and custom version classes
- if_ conditions, restricted events and switches
- strict vs. degraded write failures
"""
from datetime import datetime, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from recordtrail import (
    Version,
    VersionEvent,
    WriteFailure,
    config_for,
    set_controller_info,
    set_serializer,
    switches,
    whodunnit,
    write_failures,
)
from recordtrail.services.transaction import TRANSACTION_KEY
from recordtrail.services.version_writer import VersionWriter
from recordtrail.store import VersionStore
from tests.models import (
    Article,
    Author,
    Book,
    Gadget,
    Invoice,
    Label,
    Post,
    PostVersion,
    Profile,
    StrictVersion,
    Tag,
    Widget,
)

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
T1 = datetime(2024, 1, 2, 12, 0, tzinfo=timezone.utc)


def _versions(db, item, version_class=Version):
    stmt = (
        select(version_class)
        .where(version_class.item_type == type(item).__name__, version_class.item_id == str(item.id))
        .order_by(version_class.id)
    )
    return db.execute(stmt).scalars().all()


def _decode(db, version, column):
    return VersionStore(db, type(version)).decode(column, getattr(version, column))


class TestCreate:
    def test_create_version(self, db):
        widget = Widget(name="Anvil", color="black", updated_at=T0)
        with whodunnit("alice"):
            db.add(widget)
            db.commit()

        [version] = _versions(db, widget)
        assert version.event == VersionEvent.create
        assert version.whodunnit == "alice"
        assert version.object is None
        changes = _decode(db, version, "object_changes")
        assert changes["name"] == [None, "Anvil"]
        assert changes["color"] == [None, "black"]
        assert changes["id"] == [None, widget.id]

    def test_create_uses_update_timestamp(self, db):
        widget = Widget(name="Anvil", updated_at=T0)
        db.add(widget)
        db.commit()
        [version] = _versions(db, widget)
        assert version.created_at.replace(tzinfo=timezone.utc) == T0

    def test_create_without_timestamp_uses_wall_clock(self, db):
        before = datetime.now(timezone.utc)
        tag = Tag(name="red")
        db.add(tag)
        db.commit()
        [version] = _versions(db, tag)
        assert version.created_at.replace(tzinfo=timezone.utc) >= before.replace(microsecond=0)

    def test_untracked_event_writes_nothing(self, db):
        profile = Profile(name="Ann")
        db.add(profile)
        db.commit()
        assert _versions(db, profile) == []

    def test_if_condition(self, db):
        gadget = Gadget(name="Draft", published=False, updated_at=T0)
        db.add(gadget)
        db.commit()
        assert _versions(db, gadget) == []

        gadget.published = True
        gadget.updated_at = T1
        db.commit()
        [version] = _versions(db, gadget)
        assert version.event == VersionEvent.update

    def test_yaml_serializer(self, db):
        set_serializer("yaml")
        widget = Widget(name="Anvil", updated_at=T0)
        db.add(widget)
        db.commit()
        [version] = _versions(db, widget)
        assert version.object_changes.startswith("id:")
        assert _decode(db, version, "object_changes")["name"] == [None, "Anvil"]


class TestUpdate:
    def test_update_stores_only_diff(self, db):
        widget = Widget(name="Anvil", color="black", updated_at=T0)
        db.add(widget)
        db.commit()

        widget.name = "Hammer"
        widget.updated_at = T1
        db.commit()

        create, update = _versions(db, widget)
        assert update.event == VersionEvent.update
        assert update.object is None
        changes = _decode(db, update, "object_changes")
        assert set(changes) == {"name", "updated_at"}
        assert changes["name"] == ["Anvil", "Hammer"]
        assert update.created_at.replace(tzinfo=timezone.utc) == T1

    def test_non_notable_update_writes_nothing(self, db):
        article = Article(title="Draft", status="open", updated_at=T0)
        db.add(article)
        db.commit()

        article.status = "closed"
        article.updated_at = T1
        db.commit()
        assert len(_versions(db, article)) == 1

    def test_ignored_attribute_left_out_of_diff(self, db):
        article = Article(title="Draft", status="open", updated_at=T0)
        db.add(article)
        db.commit()

        article.title = "Final"
        article.status = "closed"
        db.commit()
        changes = _decode(db, _versions(db, article)[-1], "object_changes")
        assert changes == {"title": ["Draft", "Final"]}

    def test_skipped_attribute_never_versioned(self, db):
        article = Article(title="Draft", status="open", secret="s1")
        db.add(article)
        db.commit()

        article.secret = "s2"
        db.commit()
        [create] = _versions(db, article)
        assert "secret" not in _decode(db, create, "object_changes")

    def test_only_attributes(self, db):
        profile = Profile(name="Ann", bio="hi")
        db.add(profile)
        db.commit()

        profile.bio = "hello"
        db.commit()
        assert _versions(db, profile) == []

        profile.name = "Anna"
        profile.bio = "hey"
        db.commit()
        [version] = _versions(db, profile)
        assert _decode(db, version, "object_changes") == {"name": ["Ann", "Anna"]}

    def test_expired_attributes_keep_previous_values(self, db):
        widget = Widget(name="Anvil", updated_at=T0)
        db.add(widget)
        db.commit()
        db.expire(widget)

        widget.name = "Hammer"
        db.commit()
        changes = _decode(db, _versions(db, widget)[-1], "object_changes")
        assert changes["name"] == ["Anvil", "Hammer"]


class TestDestroy:
    def test_destroy_snapshot(self, db):
        tag = Tag(name="X")
        db.add(tag)
        db.commit()
        tag_id = tag.id

        db.delete(tag)
        db.commit()

        version = db.execute(
            select(Version).where(Version.item_type == "Tag", Version.event == VersionEvent.destroy)
        ).scalar_one()
        assert version.item_id == str(tag_id)
        assert version.object_changes is None
        assert _decode(db, version, "object") == {"id": tag_id, "name": "X"}

    def test_destroy_excludes_skipped(self, db):
        article = Article(title="Draft", status="open", secret="s1")
        db.add(article)
        db.commit()
        db.delete(article)
        db.commit()

        version = db.execute(
            select(Version).where(Version.item_type == "Article", Version.event == VersionEvent.destroy)
        ).scalar_one()
        snapshot = _decode(db, version, "object")
        assert snapshot["status"] == "open"
        assert "secret" not in snapshot

    def test_destroy_after_delete(self, db):
        label = Label(name="fragile")
        db.add(label)
        db.commit()
        db.delete(label)
        db.commit()
        versions = db.execute(select(Version).where(Version.item_type == "Label").order_by(Version.id)).scalars().all()
        assert [v.event for v in versions] == [VersionEvent.create, VersionEvent.destroy]
        assert _decode(db, versions[-1], "object")["name"] == "fragile"

    def test_destroy_of_new_record_writes_nothing(self, db):
        writer = VersionWriter(config_for(Tag), VersionStore(db))
        assert writer.record_destroy(Tag(name="temp")) is None


class TestMetadata:
    def test_meta_on_create(self, db):
        post = Post(title="Hello", body="one two three")
        db.add(post)
        db.commit()

        [version] = _versions(db, post, PostVersion)
        assert version.title_was == "Hello"
        assert version.source == "api"
        assert version.word_count == 3

    def test_meta_attribute_resolves_to_previous_value_on_update(self, db):
        post = Post(title="Hello", body="one")
        db.add(post)
        db.commit()

        post.title = "Goodbye"
        db.commit()
        update = _versions(db, post, PostVersion)[-1]
        assert update.title_was == "Hello"

    def test_versions_go_to_custom_table(self, db):
        post = Post(title="Hello")
        db.add(post)
        db.commit()
        assert _versions(db, post) == []

    def test_controller_info_matching_columns(self, db):
        set_controller_info({"request_id": "req-1", "ip": "10.0.0.1"})
        post = Post(title="Hello")
        widget = Widget(name="Anvil")
        db.add_all([post, widget])
        db.commit()

        [post_version] = _versions(db, post, PostVersion)
        assert post_version.request_id == "req-1"
        assert len(_versions(db, widget)) == 1


class TestSwitches:
    def test_global_switch(self, db):
        switches.set_enabled(False)
        widget = Widget(name="Anvil")
        db.add(widget)
        db.commit()
        assert _versions(db, widget) == []

    def test_per_model_switch(self, db):
        switches.set_enabled_for("Widget", False)
        widget = Widget(name="Anvil")
        tag = Tag(name="x")
        db.add_all([widget, tag])
        db.commit()
        assert _versions(db, widget) == []
        assert len(_versions(db, tag)) == 1

    def test_model_config_toggle(self, db):
        config = config_for(Widget)
        config.disable()
        assert config.enabled is False
        config.enable()
        assert config.enabled is True


class TestWriteFailures:
    def test_create_failure_aborts_flush(self, db):
        invoice = Invoice(number="INV-1")
        db.add(invoice)
        with pytest.raises(WriteFailure) as exc_info:
            db.flush()
        db.rollback()
        assert exc_info.value.event == "create"
        assert exc_info.value.item_type == "Invoice"
        assert db.execute(select(Invoice)).scalars().all() == []

    def test_update_failure_is_reported_not_raised(self, db):
        switches.set_enabled_for("Invoice", False)
        invoice = Invoice(number="INV-1")
        db.add(invoice)
        db.commit()
        switches.set_enabled_for("Invoice", True)

        invoice.number = "INV-2"
        db.flush()
        [failure] = write_failures(db)
        assert failure.event == "update"
        assert failure.item_id == str(invoice.id)

        db.commit()
        assert write_failures(db) == []
        assert db.execute(select(StrictVersion)).scalars().all() == []
        db.refresh(invoice)
        assert invoice.number == "INV-2"

    def test_update_failure_in_association_rolls_back_version(self, db, monkeypatch):
        """A failing association row takes its version row and transaction tag with it."""
        switches.set_track_associations(True)
        book = Book(title="Solaris", author=Author(name="Lem"))
        db.add(book)
        db.commit()

        def reject(self, version_id, foreign_key_name, foreign_key_id):
            raise OperationalError("INSERT INTO version_associations", {}, Exception("disk full"))

        monkeypatch.setattr(VersionStore, "append_association", reject)
        book.title = "Eden"
        db.flush()

        [failure] = write_failures(db)
        assert failure.event == "update"
        assert TRANSACTION_KEY not in db.info
        assert [v.event for v in _versions(db, book)] == [VersionEvent.create]

        db.commit()
        db.refresh(book)
        assert book.title == "Eden"
        assert [v.event for v in _versions(db, book)] == [VersionEvent.create]
