from datetime import date

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

import storage
from errors import BackendUnavailable, NotFoundError, StorageExhausted
from models import db, Note, Tag, Task, TimerData, UserAchievement, UserSettings, note_tags
from storage import (
    LocalNoteBackend, LocalTaskBackend, LocalTimerBackend, SqlNoteBackend, SqlTaskBackend,
    SqlTimerBackend, UserStore, delete_user_data,
)

USER = 'user_2abc'
OTHER = 'user_9xyz'
DAY = date(2026, 3, 4)

pytestmark = pytest.mark.usefixtures('app_context')


class TestLocalStore:
    def test_get_set_delete(self, local_store):
        assert local_store.get(USER, 'studyData_2026-03-04') is None
        local_store.set(USER, 'studyData_2026-03-04', '{"a": 1}')
        local_store.set(USER, 'studyData_2026-03-04', '{"a": 2}')
        assert local_store.get(USER, 'studyData_2026-03-04') == '{"a": 2}'
        assert local_store.get(OTHER, 'studyData_2026-03-04') is None

        local_store.delete(USER, 'studyData_2026-03-04')
        assert local_store.get(USER, 'studyData_2026-03-04') is None

    def test_keys_by_prefix(self, local_store):
        local_store.set(USER, 'studyData_2026-03-04', '{}')
        local_store.set(USER, 'studyData_2026-03-05', '{}')
        local_store.set(USER, f'tasks_{USER}', '[]')
        assert local_store.keys(USER, 'studyData_') == ['studyData_2026-03-04', 'studyData_2026-03-05']

    def test_drop_namespace(self, local_store):
        local_store.set(USER, 'a', '1')
        local_store.set(OTHER, 'a', '1')
        local_store.drop_namespace(USER)
        assert local_store.keys(USER) == []
        assert local_store.keys(OTHER) == ['a']

    def test_unreadable_file_is_unavailable(self, tmp_path):
        with pytest.raises(BackendUnavailable):
            storage.LocalStore(str(tmp_path / 'missing' / 'store.db'))

    def test_unreadable_blobs_are_unavailable(self, local_store):
        local_store.set(USER, f'tasks_{USER}', '{not json')
        local_store.set(USER, 'studyData_2026-03-04', '{"study_time_seconds": 5}')
        with pytest.raises(BackendUnavailable):
            LocalTaskBackend(USER, local_store).list()
        with pytest.raises(BackendUnavailable):
            LocalTimerBackend(USER, local_store).read(DAY)


class TestTimerBackends:
    def test_remote_upsert_keeps_one_row(self):
        backend = SqlTimerBackend(USER)
        backend.write(DAY, 600, 1)
        record = backend.write(DAY, 600, 1)
        record = backend.write(DAY, 900, 2)

        assert TimerData.query.filter_by(user_id=USER, date=DAY).count() == 1
        assert (record.study_time_seconds, record.pomodoro_count) == (900, 2)
        assert backend.read(DAY).study_time_seconds == 900

    def test_remote_read_missing_is_none(self):
        assert SqlTimerBackend(USER).read(DAY) is None

    def test_records_are_scoped_by_user(self):
        SqlTimerBackend(USER).write(DAY, 600, 1)
        assert SqlTimerBackend(OTHER).read(DAY) is None

    def test_local_round_trip_and_range(self, local_store):
        backend = LocalTimerBackend(USER, local_store)
        backend.write(date(2026, 3, 1), 100, 0)
        backend.write(date(2026, 3, 3), 300, 1)
        backend.write(date(2026, 3, 3), 360, 1)
        backend.write(date(2026, 3, 9), 900, 2)

        assert backend.read(date(2026, 3, 3)).study_time_seconds == 360
        assert backend.read(date(2026, 3, 2)) is None
        records = backend.read_range(date(2026, 3, 1), date(2026, 3, 4))
        assert [r.date for r in records] == [date(2026, 3, 1), date(2026, 3, 3)]

    def test_remote_range(self):
        backend = SqlTimerBackend(USER)
        backend.write(date(2026, 3, 5), 50, 0)
        backend.write(date(2026, 2, 1), 10, 0)
        backend.write(date(2026, 3, 1), 20, 0)
        records = backend.read_range(date(2026, 3, 1), date(2026, 3, 31))
        assert [r.study_time_seconds for r in records] == [20, 50]

    def test_database_error_becomes_unavailable(self, monkeypatch):
        def broken(*args, **kwargs):
            raise OperationalError('SELECT 1', {}, Exception('server closed the connection'))

        monkeypatch.setattr(db.session, 'execute', broken)
        with pytest.raises(BackendUnavailable):
            storage.ping_remote()


@pytest.mark.parametrize('make_backend', [
    lambda store: SqlTaskBackend(USER),
    lambda store: LocalTaskBackend(USER, store),
], ids=['remote', 'local'])
class TestTaskBackends:
    def test_create_and_list(self, local_store, make_backend):
        backend = make_backend(local_store)
        first = backend.create({'title': 'Read chapter 3', 'priority': 'high', 'due': date(2026, 3, 10)})
        second = backend.create({'title': 'Flashcards'})

        assert first['due'] == '2026-03-10'
        assert first['completed'] is False
        assert second['priority'] == 'medium'
        assert {t['id'] for t in backend.list()} == {first['id'], second['id']}

    def test_update_and_delete(self, local_store, make_backend):
        backend = make_backend(local_store)
        task = backend.create({'title': 'Essay outline'})

        updated = backend.update(task['id'], {'completed': True, 'due': None})
        assert updated['completed'] is True

        backend.delete(task['id'])
        with pytest.raises(NotFoundError):
            backend.get(task['id'])
        with pytest.raises(NotFoundError):
            backend.delete(task['id'])


@pytest.mark.parametrize('make_backend', [
    lambda store: SqlNoteBackend(USER),
    lambda store: LocalNoteBackend(USER, store),
], ids=['remote', 'local'])
class TestNoteBackends:
    def test_tags_replaced_on_update(self, local_store, make_backend):
        backend = make_backend(local_store)
        note = backend.create({'title': 'Krebs cycle', 'content': '# Steps', 'tags': ['biology', 'exam']})
        assert sorted(note['tags']) == ['biology', 'exam']

        updated = backend.update(note['id'], {'tags': ['chemistry']})
        assert updated['tags'] == ['chemistry']
        assert updated['content'] == '# Steps'

    def test_missing_note(self, local_store, make_backend):
        with pytest.raises(NotFoundError):
            make_backend(local_store).update('nope', {'title': 'x'})


class TestRemoteNotes:
    def test_tag_vocabulary_is_shared(self):
        SqlNoteBackend(USER).create({'title': 'a', 'content': 'a', 'tags': ['math']})
        SqlNoteBackend(OTHER).create({'title': 'b', 'content': 'b', 'tags': ['math', 'physics']})
        assert sorted(tag.name for tag in Tag.query.all()) == ['math', 'physics']

    def test_delete_removes_tag_links(self):
        backend = SqlNoteBackend(USER)
        note = backend.create({'title': 'a', 'content': 'a', 'tags': ['math', 'history']})
        backend.delete(note['id'])
        assert db.session.execute(note_tags.select()).fetchall() == []
        assert Tag.query.count() == 2

    def test_tag_created_concurrently_is_reused(self, local_store, monkeypatch):
        db.session.add(Tag(name='math'))
        db.session.commit()
        find_tag = SqlNoteBackend._find_tag
        missed = []

        def lookup_before_other_writer(backend, name):
            # the first lookup runs before another request commits the same tag
            if not missed:
                missed.append(name)
                return None
            return find_tag(backend, name)

        monkeypatch.setattr(SqlNoteBackend, '_find_tag', lookup_before_other_writer)
        store = UserStore(USER, local_store)
        note = store.notes.create({'title': 'a', 'content': 'a', 'tags': ['math']})

        assert note['tags'] == ['math']
        assert Tag.query.count() == 1
        assert store.backend == 'remote'

    def test_constraint_violation_is_not_an_outage(self):
        with pytest.raises(IntegrityError):
            with storage.remote_errors("Creating tag"):
                raise IntegrityError('INSERT INTO tags', {}, Exception('UNIQUE constraint failed: tags.name'))


class TestRepository:
    def test_remote_failure_switches_all_entities(self, local_store, remote_down):
        store = UserStore(USER, local_store)
        task = store.tasks.create({'title': 'Offline task'})

        assert store.backend == 'local'
        assert store.tasks.get(task['id'])['title'] == 'Offline task'
        store.timer.write(DAY, 60, 0)
        assert LocalTimerBackend(USER, local_store).read(DAY).study_time_seconds == 60
        assert Task.query.count() == 0

    def test_not_found_does_not_fail_over(self, local_store):
        store = UserStore(USER, local_store)
        with pytest.raises(NotFoundError):
            store.tasks.get('missing')
        assert store.backend == 'remote'

    def test_both_down(self, local_store, remote_down, local_down):
        store = UserStore(USER, local_store)
        with pytest.raises(StorageExhausted):
            store.notes.list()

    def test_reconnect(self, local_store):
        store = UserStore(USER, local_store)
        store.switch.fail_over('test')
        assert store.reconnect() is True
        assert store.backend == 'remote'


class TestDeleteUserData:
    def test_cascades_across_tables(self, local_store):
        store = UserStore(USER, local_store)
        store.timer.write(DAY, 600, 1)
        store.tasks.create({'title': 'mine'})
        store.notes.create({'title': 'mine', 'content': 'x', 'tags': ['math']})
        db.session.add(UserSettings(user_id=USER, key='theme', value='dark'))
        db.session.add(UserAchievement(user_id=USER, name='first_pomodoro'))
        db.session.commit()
        LocalTaskBackend(USER, local_store).create({'title': 'offline'})

        other = UserStore(OTHER, local_store)
        other.tasks.create({'title': 'theirs'})
        other.notes.create({'title': 'theirs', 'content': 'y', 'tags': ['math']})

        delete_user_data(USER, local_store)

        for model in (TimerData, Task, Note, UserSettings, UserAchievement):
            assert model.query.filter_by(user_id=USER).count() == 0
        assert Task.query.filter_by(user_id=OTHER).count() == 1
        assert len(db.session.execute(note_tags.select()).fetchall()) == 1
        assert local_store.keys(USER) == []
