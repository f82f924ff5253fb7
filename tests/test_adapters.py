from types import SimpleNamespace
from unittest.mock import MagicMock, patch

from mnemo.embeddings import JinaEmbedding, OpenAIEmbedding
from mnemo.generation import OpenAIGenerator


def _chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


def test_openai_embedding_orders_by_index():
    embedder = OpenAIEmbedding(openai_api_key="sk-test", use_cache=False)
    embedder.client = MagicMock()
    embedder.client.embeddings.create.return_value = SimpleNamespace(data=[
        SimpleNamespace(index=1, embedding=[0.2, 0.2]),
        SimpleNamespace(index=0, embedding=[0.1, 0.1]),
    ])

    assert embedder.embed_documents(["first", "second"]) == [[0.1, 0.1], [0.2, 0.2]]
    embedder.client.embeddings.create.assert_called_once_with(
        model="text-embedding-3-small", input=["first", "second"]
    )


def test_jina_embedding_posts_batch():
    embedder = JinaEmbedding(jina_api_key="jina-test", use_cache=False, task="retrieval.passage")
    response = MagicMock()
    response.json.return_value = {"data": [{"embedding": [1.0]}, {"embedding": [2.0]}]}

    with patch("requests.post", return_value=response) as post:
        assert embedder.embed_documents(["a", "b"]) == [[1.0], [2.0]]

    payload = post.call_args.kwargs["json"]
    assert payload == {"model": "jina-embeddings-v3", "input": ["a", "b"], "task": "retrieval.passage"}
    assert post.call_args.kwargs["headers"]["Authorization"] == "Bearer jina-test"


def test_openai_generator_invoke_strips_content():
    generator = OpenAIGenerator(openai_api_key="sk-test", temperature=0.1)
    generator.client = MagicMock()
    generator.client.chat.completions.create.return_value = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content="  summary \n"))]
    )

    assert generator.invoke("Summarize") == "summary"
    kwargs = generator.client.chat.completions.create.call_args.kwargs
    assert kwargs["messages"] == [{"role": "user", "content": "Summarize"}]
    assert kwargs["temperature"] == 0.1


def _stream_response(chunks):
    response = MagicMock()
    response.__enter__.return_value = response
    response.__iter__.return_value = iter(chunks)
    return response


def test_openai_generator_stream_skips_empty_chunks():
    generator = OpenAIGenerator(openai_api_key="sk-test")
    generator.client = MagicMock()
    generator.client.chat.completions.create.return_value = _stream_response([
        _chunk("Hel"),
        SimpleNamespace(choices=[]),
        _chunk(None),
        _chunk("lo"),
    ])

    assert list(generator.stream("Answer")) == ["Hel", "lo"]
    assert generator.client.chat.completions.create.call_args.kwargs["stream"] is True


def test_closing_a_stream_early_releases_the_response():
    generator = OpenAIGenerator(openai_api_key="sk-test")
    generator.client = MagicMock()
    response = _stream_response([_chunk("Hel"), _chunk("lo"), _chunk("!")])
    generator.client.chat.completions.create.return_value = response

    deltas = generator.stream("Answer")
    assert next(deltas) == "Hel"
    deltas.close()

    assert response.__exit__.called


def test_local_server_needs_no_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    generator = OpenAIGenerator("llama3", base_url="http://localhost:11434/v1")
    assert generator.model == "llama3"
