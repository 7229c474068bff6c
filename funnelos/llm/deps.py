from funnelos.llm.client import GenerationProvider, LLMClient


def get_generation_provider() -> GenerationProvider:
    return LLMClient()
