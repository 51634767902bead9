"""
Document store used by the draw engine.

Collections are addressed by path tuples such as ('tournaments', tid, 'matches').
Documents are plain dicts; the document id is returned under the 'id' key and
is never stored inside the document itself.
"""
import copy
import glob
import logging
import os
import uuid
from contextlib import contextmanager
from typing import Dict, List, Optional, Tuple

import yaml
from filelock import FileLock, Timeout

from .errors import NotFoundError, StoreError

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH_SIZE = 500


class Increment:
    """Field value that adds to the stored number instead of replacing it."""
    def __init__(self, value):
        self.value = value

    def __repr__(self):
        return f"Increment({self.value})"


def _apply_fields(doc: Dict, fields: Dict):
    """Apply a partial update; keys may be dotted paths into nested dicts."""
    for key, value in fields.items():
        parts = key.split('.')
        target = doc
        for part in parts[:-1]:
            if not isinstance(target.get(part), dict):
                target[part] = {}
            target = target[part]
        if isinstance(value, Increment):
            target[parts[-1]] = (target.get(parts[-1]) or 0) + value.value
        else:
            target[parts[-1]] = copy.deepcopy(value)


def _with_id(doc_id: str, doc: Dict) -> Dict:
    result = copy.deepcopy(doc)
    result['id'] = doc_id
    return result


def _matches_filters(doc: Dict, filters: Dict) -> bool:
    return all(doc.get(key) == value for key, value in filters.items())


class DocumentStore:
    """Store operations shared by every backend.

    Backends provide _read/_write/_paths and may override _transaction.
    """

    def __init__(self, max_batch_size: int = DEFAULT_MAX_BATCH_SIZE):
        self.max_batch_size = max_batch_size

    def _read(self, path: Tuple) -> Dict[str, Dict]:
        raise NotImplementedError

    def _write(self, path: Tuple, docs: Dict[str, Dict]):
        raise NotImplementedError

    def _paths(self) -> List[Tuple]:
        raise NotImplementedError

    @contextmanager
    def _transaction(self):
        yield

    def get(self, path: Tuple, doc_id: str) -> Optional[Dict]:
        with self._transaction():
            doc = self._read(path).get(doc_id)
        return _with_id(doc_id, doc) if doc is not None else None

    def add(self, path: Tuple, data: Dict) -> str:
        doc_id = uuid.uuid4().hex
        self.set(path, doc_id, data)
        return doc_id

    def set(self, path: Tuple, doc_id: str, data: Dict):
        doc = copy.deepcopy(data)
        doc.pop('id', None)
        with self._transaction():
            docs = self._read(path)
            docs[doc_id] = doc
            self._write(path, docs)

    def update(self, path: Tuple, doc_id: str, fields: Dict):
        with self._transaction():
            docs = self._read(path)
            if doc_id not in docs:
                raise NotFoundError(f"Document {'/'.join(path)}/{doc_id} not found")
            _apply_fields(docs[doc_id], fields)
            self._write(path, docs)

    def delete(self, path: Tuple, doc_id: str):
        with self._transaction():
            docs = self._read(path)
            if docs.pop(doc_id, None) is not None:
                self._write(path, docs)

    def query(self, path: Tuple, **filters) -> List[Dict]:
        with self._transaction():
            docs = self._read(path)
        return [_with_id(doc_id, doc) for doc_id, doc in docs.items() if _matches_filters(doc, filters)]

    def collection_group(self, name: str, **filters) -> List[Dict]:
        """Query every collection whose path ends with the given name."""
        results = []
        with self._transaction():
            for path in self._paths():
                if path[-1] != name:
                    continue
                for doc_id, doc in self._read(path).items():
                    if _matches_filters(doc, filters):
                        results.append(_with_id(doc_id, doc))
        return results

    def batch_update(self, writes: List[Tuple[Tuple, str, Dict]]):
        """Apply (path, doc_id, fields) updates atomically.

        Batches larger than max_batch_size are rejected; callers chunk.
        """
        if len(writes) > self.max_batch_size:
            raise StoreError(f"Batch of {len(writes)} writes exceeds the maximum of {self.max_batch_size}")
        with self._transaction():
            staged = {}
            for path, doc_id, _ in writes:
                if path not in staged:
                    staged[path] = self._read(path)
                if doc_id not in staged[path]:
                    raise NotFoundError(f"Document {'/'.join(path)}/{doc_id} not found")
            for path, doc_id, fields in writes:
                _apply_fields(staged[path][doc_id], fields)
            for path, docs in staged.items():
                self._write(path, docs)
        logger.debug("Committed batch of %d writes", len(writes))


class MemoryStore(DocumentStore):
    """In-process store, used by tests and embedding callers."""

    def __init__(self, max_batch_size: int = DEFAULT_MAX_BATCH_SIZE):
        super().__init__(max_batch_size)
        self._collections = {}

    def _read(self, path):
        return copy.deepcopy(self._collections.get(tuple(path), {}))

    def _write(self, path, docs):
        self._collections[tuple(path)] = copy.deepcopy(docs)

    def _paths(self):
        return list(self._collections.keys())


class YamlStore(DocumentStore):
    """Store keeping one YAML file per collection under a data directory.

    ('tournaments', 't1', 'matches') lives in <data_dir>/tournaments/t1/matches.yaml.
    All access is serialized through a file lock in the data directory.
    """

    def __init__(self, data_dir: str, max_batch_size: int = DEFAULT_MAX_BATCH_SIZE, lock_timeout: int = 10):
        super().__init__(max_batch_size)
        self.data_dir = data_dir
        os.makedirs(data_dir, exist_ok=True)
        self._lock = FileLock(os.path.join(data_dir, '.lock'), timeout=lock_timeout)

    def _file_path(self, path):
        return os.path.join(self.data_dir, *path) + '.yaml'

    @contextmanager
    def _transaction(self):
        try:
            self._lock.acquire()
        except Timeout as e:
            raise StoreError(f"Could not lock data directory {self.data_dir}") from e
        try:
            yield
        finally:
            self._lock.release()

    def _read(self, path):
        file_path = self._file_path(path)
        if not os.path.exists(file_path):
            return {}
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise StoreError(f"Failed to read {file_path}: {e}") from e
        return data or {}

    def _write(self, path, docs):
        file_path = self._file_path(path)
        try:
            os.makedirs(os.path.dirname(file_path), exist_ok=True)
            with open(file_path, 'w', encoding='utf-8') as f:
                yaml.dump(docs, f, default_flow_style=False)
        except OSError as e:
            raise StoreError(f"Failed to write {file_path}: {e}") from e

    def _paths(self):
        paths = []
        for file_path in glob.glob(os.path.join(self.data_dir, '**', '*.yaml'), recursive=True):
            relative = os.path.relpath(file_path, self.data_dir)[:-len('.yaml')]
            paths.append(tuple(relative.split(os.sep)))
        return sorted(paths)


class RankingSource:
    """Supplies the ranking points of a person within a club."""

    def get_points(self, person_id: str, club_id: str) -> int:
        raise NotImplementedError


class ClubPointsRankingSource(RankingSource):
    """Reads users/{uid}.clubs.{club_id}.points; missing data counts as 0."""

    def __init__(self, store: DocumentStore):
        self.store = store

    def get_points(self, person_id, club_id):
        if not person_id or not club_id:
            return 0
        user = self.store.get(('users',), person_id)
        if user is None:
            logger.warning("No user document for %s, ranking points treated as 0", person_id)
            return 0
        club = (user.get('clubs') or {}).get(club_id) or {}
        return int(club.get('points') or 0)
