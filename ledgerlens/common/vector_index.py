"""
Vector Index

Access to the store of embedded spreadsheet cells. Two operations are
needed by the retriever:
- vector_search: approximate nearest-neighbor query, (record, score) pairs
- find: plain equality/sort/limit query, used when vector search fails

Implementations:
- AtlasVectorIndex: MongoDB Atlas $vectorSearch aggregation (pymongo)
- InMemoryVectorIndex: numpy cosine similarity over loaded records
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import numpy as np

logger = logging.getLogger("ledgerlens.common.vector_index")

SortSpec = Sequence[Tuple[str, int]]

# Default ordering for deterministic scans: newest year first
DEFAULT_SCAN_SORT: SortSpec = (("year", -1), ("quarter", 1), ("month", 1))


class UnsupportedPipelineError(RuntimeError):
    """The index rejected the shape of a query (e.g. pre-filter with $vectorSearch)"""


class VectorIndex(Protocol):
    """Interface consumed by the retriever"""

    def vector_search(
        self,
        query_vector: List[float],
        num_candidates: int,
        limit: int,
        pre_filter: Optional[Dict[str, Any]] = None,
    ) -> List[Tuple[Dict[str, Any], float]]:
        ...

    def find(
        self,
        filters: Dict[str, Any],
        sort: Optional[SortSpec] = None,
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        ...


class AtlasVectorIndex:
    """
    MongoDB Atlas vector index.

    The client is created lazily on first use so that constructing the
    pipeline never opens a connection.
    """

    def __init__(
        self,
        mongo_url: str,
        database: str = "ledgerlens",
        collection: str = "atlascells",
        index_name: str = "vector_index",
        embedding_path: str = "embedding",
        client=None,
    ):
        """
        Args:
            mongo_url: MongoDB connection string
            database: Database name
            collection: Collection holding one document per cell
            index_name: Atlas Search vector index name
            embedding_path: Document field holding the embedding
            client: Pre-built MongoClient (mostly for tests)
        """
        self._mongo_url = mongo_url
        self._database = database
        self._collection_name = collection
        self._index_name = index_name
        self._embedding_path = embedding_path
        self._client = client
        self._collection = None

    def _get_collection(self):
        """Lazily connect and return the collection"""
        if self._collection is not None:
            return self._collection

        if self._client is None:
            if not self._mongo_url:
                raise RuntimeError("MongoDB URL not configured")
            from pymongo import MongoClient

            self._client = MongoClient(self._mongo_url)
            logger.info("Connected to MongoDB (database=%s, collection=%s)", self._database, self._collection_name)

        self._collection = self._client[self._database][self._collection_name]
        return self._collection

    @property
    def is_available(self) -> bool:
        return self._client is not None or bool(self._mongo_url)

    def build_vector_pipeline(
        self,
        query_vector: List[float],
        num_candidates: int,
        limit: int,
        pre_filter: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Aggregation pipeline with $vectorSearch as the first stage"""
        stage = {
            "index": self._index_name,
            "path": self._embedding_path,
            "queryVector": list(query_vector),
            "numCandidates": num_candidates,
            "limit": limit,
        }
        if pre_filter:
            stage["filter"] = pre_filter

        return [
            {"$vectorSearch": stage},
            {"$addFields": {"score": {"$meta": "vectorSearchScore"}}},
            {"$project": {self._embedding_path: 0}},
        ]

    def vector_search(
        self,
        query_vector: List[float],
        num_candidates: int,
        limit: int,
        pre_filter: Optional[Dict[str, Any]] = None,
    ) -> List[Tuple[Dict[str, Any], float]]:
        from pymongo.errors import OperationFailure

        pipeline = self.build_vector_pipeline(query_vector, num_candidates, limit, pre_filter)
        try:
            docs = list(self._get_collection().aggregate(pipeline))
        except OperationFailure as e:
            raise UnsupportedPipelineError(f"$vectorSearch rejected: {e}") from e

        results = []
        for doc in docs:
            record = _clean_document(doc)
            score = float(record.pop("score", 0.0) or 0.0)
            results.append((record, score))
        return results

    def find(
        self,
        filters: Dict[str, Any],
        sort: Optional[SortSpec] = None,
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        cursor = self._get_collection().find(filters, projection={self._embedding_path: 0})
        if sort:
            cursor = cursor.sort(list(sort))
        if limit:
            cursor = cursor.limit(limit)
        return [_clean_document(doc) for doc in cursor]

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            self._collection = None


class InMemoryVectorIndex:
    """
    Brute-force index over a list of records.

    Each record is a dict carrying its embedding under ``embedding_path``.
    Unlike Atlas it always accepts a pre-filter.
    """

    def __init__(self, records: List[Dict[str, Any]], embedding_path: str = "embedding"):
        self._embedding_path = embedding_path
        self._records = [dict(r) for r in records]

        vectors = [r.get(embedding_path) for r in self._records]
        self._has_vector = np.array([v is not None and len(v) > 0 for v in vectors], dtype=bool)

        dim = max((len(v) for v in vectors if v), default=0)
        matrix = np.zeros((len(self._records), dim), dtype=np.float32)
        for i, v in enumerate(vectors):
            if v:
                matrix[i, :len(v)] = v
        self._matrix = matrix

    @classmethod
    def from_json(cls, path, embedding_path: str = "embedding") -> "InMemoryVectorIndex":
        """Load records from a JSON list (or {"records": [...]})"""
        path = Path(path).expanduser()
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get("records", [])
        logger.info("Loaded %d records from %s", len(data), path)
        return cls(data, embedding_path=embedding_path)

    def __len__(self) -> int:
        return len(self._records)

    def vector_search(
        self,
        query_vector: List[float],
        num_candidates: int,
        limit: int,
        pre_filter: Optional[Dict[str, Any]] = None,
    ) -> List[Tuple[Dict[str, Any], float]]:
        if not self._records:
            return []

        query = np.asarray(query_vector, dtype=np.float32)
        if query.shape[0] != self._matrix.shape[1]:
            raise ValueError(
                f"Vector dimension mismatch: {query.shape[0]} vs {self._matrix.shape[1]}"
            )

        norms = np.linalg.norm(self._matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            scores = np.where(norms > 0, self._matrix @ query / norms, 0.0)

        eligible = [i for i in range(len(self._records)) if self._has_vector[i]]
        if pre_filter:
            eligible = [i for i in eligible if _matches(self._records[i], pre_filter)]

        # Approximate the candidate pool, then keep the best `limit`
        ranked = sorted(eligible, key=lambda i: scores[i], reverse=True)[:num_candidates]
        return [(self._public(self._records[i]), float(scores[i])) for i in ranked[:limit]]

    def find(
        self,
        filters: Dict[str, Any],
        sort: Optional[SortSpec] = None,
        limit: int = 0,
    ) -> List[Dict[str, Any]]:
        rows = [r for r in self._records if _matches(r, filters)]

        # Apply keys last-to-first so the first key dominates; missing values last
        for field_name, direction in reversed(list(sort or ())):
            if direction < 0:
                rows.sort(key=lambda r: (r.get(field_name) is not None, r.get(field_name)), reverse=True)
            else:
                rows.sort(key=lambda r: (r.get(field_name) is None, r.get(field_name)))

        if limit:
            rows = rows[:limit]
        return [self._public(r) for r in rows]

    def _public(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in record.items() if k != self._embedding_path}


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    """Equality match, with support for {"$in": [...]}"""
    for key, expected in filters.items():
        value = record.get(key)
        if isinstance(expected, dict) and "$in" in expected:
            if value not in expected["$in"]:
                return False
        elif value != expected:
            return False
    return True


def _clean_document(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Copy a MongoDB document, turning ObjectId into a plain string"""
    record = dict(doc)
    if "_id" in record:
        record["_id"] = str(record["_id"])
    return record
