from docpipeline.vectorstore.base import QueryResult, VectorRecord, VectorStoreBase, vector_key
from docpipeline.vectorstore.factory import get_vector_store

__all__ = ["VectorStoreBase", "VectorRecord", "QueryResult", "vector_key", "get_vector_store"]
