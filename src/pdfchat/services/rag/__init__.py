from pdfchat.services.rag.query_rewriter import QueryRewriter
from pdfchat.services.rag.retriever import RetrievalOptions, Retriever, build_context
from pdfchat.services.rag.types import QueryAnalysis, RetrievalResponse, RetrievalResult

__all__ = [
    "QueryAnalysis",
    "QueryRewriter",
    "RetrievalOptions",
    "RetrievalResponse",
    "RetrievalResult",
    "Retriever",
    "build_context",
]
