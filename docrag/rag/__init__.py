# =============================================================================
# RAG Package — Retrieval & Answer Synthesis
# =============================================================================
#   - retriever.py: LangGraph graph (embed → compatibility check → search →
#     filter → sources → synthesize | no_content)
#   - synthesizer.py: Style-aware prompt building and LLM generation with a
#     raw-chunks fallback
# =============================================================================
