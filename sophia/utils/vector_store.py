"""
Lightweight file-based vector store.

Keeps one record per id (embedding, flat metadata, JSON document) and
provides cosine-similarity search. Used as the backing store of the tool
catalog.
"""

import json
import logging
import os
import pickle
from typing import Any, Dict, List, Optional

import numpy as np

from sophia.utils.error_handling import ErrorContext, StorageError

logger = logging.getLogger(__name__)


class FileVectorStore:
    """
    File-based vector store that persists records to disk and provides similarity search.

    With storage_dir=None the store lives in memory only.
    """

    def __init__(self, storage_dir: Optional[str] = "data/tools", collection: str = "tool_registry"):
        """
        Initialize the file vector store.

        Args:
            storage_dir: Directory to store vector data, or None for memory only
            collection: Collection name, used as the file name prefix
        """
        self.storage_dir = storage_dir
        self.collection = collection

        # In-memory index
        self.index: Dict[str, Dict[str, Any]] = {}  # id -> {"metadata", "document"}
        self.vectors: Dict[str, np.ndarray] = {}  # id -> embedding

        if storage_dir is not None:
            self.index_file = os.path.join(storage_dir, f"{collection}_index.json")
            self.embeddings_file = os.path.join(storage_dir, f"{collection}_embeddings.pkl")
            with ErrorContext("vector_store", "Failed to create storage directory", StorageError):
                os.makedirs(storage_dir, exist_ok=True)
            self._load_data()

        logger.info(f"Initialized vector store '{collection}' with {len(self.index)} records")

    def _load_data(self) -> None:
        """Load vector data from disk."""
        with ErrorContext("vector_store", "Failed to load vector data", StorageError):
            if os.path.exists(self.index_file):
                with open(self.index_file, 'r') as f:
                    self.index = json.load(f)

            if os.path.exists(self.embeddings_file):
                with open(self.embeddings_file, 'rb') as f:
                    self.vectors = pickle.load(f)

        logger.info(f"Loaded {len(self.index)} records from disk")

    def _save_data(self, index: Dict[str, Dict[str, Any]], vectors: Dict[str, np.ndarray]) -> None:
        """Write a new state to disk, then make it the in-memory state."""
        if self.storage_dir is not None:
            with ErrorContext("vector_store", "Failed to save vector data", StorageError):
                with open(self.index_file, 'w') as f:
                    json.dump(index, f)
                with open(self.embeddings_file, 'wb') as f:
                    pickle.dump(vectors, f)

        self.index = index
        self.vectors = vectors

    def get(self, ids: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        """
        Fetch records by id, or every record when ids is None.

        Returns:
            List of {"id", "metadata", "document"} dicts; unknown ids are skipped
        """
        wanted = ids if ids is not None else list(self.index.keys())
        return [
            {"id": record_id, **self.index[record_id]}
            for record_id in wanted
            if record_id in self.index
        ]

    def add(self, ids: List[str], embeddings: List[List[float]],
            metadatas: List[Dict[str, Any]], documents: List[str]) -> None:
        """
        Insert new records.

        Raises:
            StorageError: If an id already exists
        """
        duplicates = [record_id for record_id in ids if record_id in self.index]
        if duplicates:
            raise StorageError(f"Records already exist: {', '.join(duplicates)}", component="vector_store")

        index = dict(self.index)
        vectors = dict(self.vectors)
        for record_id, embedding, metadata, document in zip(ids, embeddings, metadatas, documents):
            index[record_id] = {"metadata": metadata, "document": document}
            vectors[record_id] = np.array(embedding, dtype=float)

        self._save_data(index, vectors)

    def update(self, ids: List[str], metadatas: List[Dict[str, Any]], documents: List[str],
               embeddings: Optional[List[List[float]]] = None) -> None:
        """
        Replace existing records. Embeddings are kept when not supplied.

        Raises:
            StorageError: If an id does not exist
        """
        missing = [record_id for record_id in ids if record_id not in self.index]
        if missing:
            raise StorageError(f"Records not found: {', '.join(missing)}", component="vector_store")

        index = dict(self.index)
        vectors = dict(self.vectors)
        for position, record_id in enumerate(ids):
            index[record_id] = {"metadata": metadatas[position], "document": documents[position]}
            if embeddings is not None:
                vectors[record_id] = np.array(embeddings[position], dtype=float)

        self._save_data(index, vectors)

    def delete(self, ids: List[str]) -> None:
        """
        Delete records from the store.

        Args:
            ids: List of record IDs to delete
        """
        index = {k: v for k, v in self.index.items() if k not in ids}
        vectors = {k: v for k, v in self.vectors.items() if k not in ids}
        self._save_data(index, vectors)
        logger.info(f"Deleted {len(ids)} records")

    def query(self, vector: List[float], top_k: int = 5) -> Dict[str, Any]:
        """
        Perform similarity search for the closest vectors.

        Args:
            vector: Query vector
            top_k: Number of results to return

        Returns:
            {"matches": [{"id", "score", "metadata", "document"}, ...]}
        """
        if not self.vectors:
            return {"matches": []}

        query_vector = np.array(vector, dtype=float)
        norm_a = np.linalg.norm(query_vector)

        scores = {}
        for vec_id, vec_values in self.vectors.items():
            norm_b = np.linalg.norm(vec_values)
            if norm_a == 0 or norm_b == 0 or vec_values.shape != query_vector.shape:
                similarity = 0.0
            else:
                similarity = float(np.dot(query_vector, vec_values) / (norm_a * norm_b))
            scores[vec_id] = similarity

        sorted_results = sorted(scores.items(), key=lambda x: x[1], reverse=True)[:top_k]

        matches = []
        for vec_id, score in sorted_results:
            record = self.index.get(vec_id, {})
            matches.append({
                "id": vec_id,
                "score": score,
                "metadata": record.get("metadata", {}),
                "document": record.get("document"),
            })

        return {"matches": matches}

    def count_vectors(self) -> int:
        """Return the number of vectors in the store."""
        return len(self.vectors)
