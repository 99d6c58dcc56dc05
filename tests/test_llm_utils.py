"""Tests for tag extraction, similarity scoring and the completion client."""

import asyncio
import unittest

import httpx

from media_tag_assistant.context import RequestCancelled, RequestContext
from media_tag_assistant.llm_utils import (
    CompletionClient,
    CompletionError,
    constrain_to_vocabulary,
    extract_tags,
    parse_score,
    parse_tag_array,
    parse_tag_object,
    score_similarity,
)
from media_tag_assistant.models import MediaType
from tests.fakes import FakeCompletionClient, json_response, request_json


class TestParseTagArray(unittest.TestCase):

    def test_plain_array(self):
        self.assertEqual(parse_tag_array('["School Life", "Redemption"]'), ["School Life", "Redemption"])

    def test_array_wrapped_in_explanation(self):
        raw = 'Sure! Here are the tags:\n["Student Heroine",\n "Redemption"]\nHope this helps.'
        self.assertEqual(parse_tag_array(raw), ["Student Heroine", "Redemption"])

    def test_not_json_returns_empty(self):
        self.assertEqual(parse_tag_array("I cannot help with that."), [])
        self.assertEqual(parse_tag_array("[School Life, Redemption]"), [])
        self.assertEqual(parse_tag_array(None), [])

    def test_drops_non_strings_and_duplicates(self):
        self.assertEqual(parse_tag_array('["Drama", 3, "drama", "  ", null, "Mystery"]'), ["Drama", "Mystery"])


class TestParseTagObject(unittest.TestCase):

    def test_object_with_tags(self):
        self.assertEqual(parse_tag_object('{"tags": ["Time Loop", "Mystery"]}'), ["Time Loop", "Mystery"])

    def test_fenced_object(self):
        raw = '```json\n{"tags": ["Iyashikei"]}\n```'
        self.assertEqual(parse_tag_object(raw), ["Iyashikei"])

    def test_object_inside_chatter(self):
        self.assertEqual(parse_tag_object('Result: {"tags": ["Revenge"]} done'), ["Revenge"])

    def test_bare_array_fallback(self):
        self.assertEqual(parse_tag_object('["Revenge"]'), ["Revenge"])

    def test_garbage_returns_empty(self):
        self.assertEqual(parse_tag_object('{"tags": "Revenge"}'), [])
        self.assertEqual(parse_tag_object("no json here"), [])
        self.assertEqual(parse_tag_object(""), [])


class TestParseScore(unittest.TestCase):

    def test_numbers(self):
        self.assertEqual(parse_score("0.82"), 0.82)
        self.assertEqual(parse_score("  .5\n"), 0.5)
        self.assertEqual(parse_score("0.7 because both are about school"), 0.7)

    def test_clamped_into_unit_interval(self):
        self.assertEqual(parse_score("7"), 1.0)
        self.assertEqual(parse_score("-0.2"), 0.0)

    def test_non_numeric_is_zero(self):
        self.assertEqual(parse_score("high"), 0.0)
        self.assertEqual(parse_score(""), 0.0)
        self.assertEqual(parse_score(None), 0.0)


class TestConstrainToVocabulary(unittest.TestCase):

    def test_case_insensitive_and_canonical(self):
        vocabulary = ["Time Loop", "Iyashikei", "Revenge"]
        self.assertEqual(constrain_to_vocabulary(["time loop", "Made Up", "REVENGE"], vocabulary), ["Time Loop", "Revenge"])

    def test_truncates_to_five(self):
        tags = [f"Tag {i}" for i in range(8)]
        self.assertEqual(constrain_to_vocabulary(tags, tags), tags[:5])

    def test_empty_vocabulary_keeps_model_output(self):
        tags = [f"Tag {i}" for i in range(7)]
        self.assertEqual(constrain_to_vocabulary(tags, ()), tags[:5])


class TestExtractTags(unittest.IsolatedAsyncioTestCase):

    async def test_empty_text_skips_model(self):
        client = FakeCompletionClient('["never"]')
        outcome = await extract_tags(client, text="   ", media_type=MediaType.GALGAME, model="m")
        self.assertEqual(outcome.value, [])
        self.assertFalse(outcome.degraded)
        self.assertEqual(client.calls, [])

    async def test_galgame_array_prompt(self):
        client = FakeCompletionClient('Tags: ["Redemption", "Student Heroine"]')
        outcome = await extract_tags(client, text="redemption, heroine is a student", media_type=MediaType.GALGAME, model="m")
        self.assertEqual(outcome.value, ["Redemption", "Student Heroine"])
        prompt = client.calls[0]["prompt"]
        self.assertIn("Output ONLY a JSON array", prompt)
        self.assertIn("redemption, heroine is a student", prompt)
        self.assertEqual(client.calls[0]["temperature"], 0.7)

    async def test_malformed_output_is_degraded_empty(self):
        client = FakeCompletionClient("I think you would enjoy romance.")
        outcome = await extract_tags(client, text="something", media_type=MediaType.GALGAME, model="m")
        self.assertEqual(outcome.value, [])
        self.assertTrue(outcome.degraded)

    async def test_transport_failure_is_degraded_empty(self):
        client = FakeCompletionClient(CompletionError("boom"))
        for media_type in MediaType:
            outcome = await extract_tags(client, text="something", media_type=media_type, model="m")
            self.assertEqual(outcome.value, [])
            self.assertTrue(outcome.degraded)
            self.assertIn("boom", outcome.reason)

    async def test_anime_prompt_lists_vocabulary_and_filters(self):
        client = FakeCompletionClient('{"tags": ["camping", "Friendship", "Not A Tag"]}')
        outcome = await extract_tags(
            client,
            text="camping with friends",
            media_type=MediaType.ANIME,
            model="m",
            vocabulary=("Camping", "Iyashikei"),
        )
        self.assertEqual(outcome.value, ["Camping"])
        prompt = client.calls[0]["prompt"]
        self.assertIn("anime tag analyzer", prompt)
        self.assertIn("Camping, Iyashikei", prompt)

    async def test_manga_without_vocabulary_is_unfiltered(self):
        client = FakeCompletionClient('{"tags": ["Volleyball", "Underdog", "Team Sports", "School", "Rivalry", "Drama"]}')
        outcome = await extract_tags(client, text="volleyball", media_type=MediaType.MANGA, model="m")
        self.assertEqual(outcome.value, ["Volleyball", "Underdog", "Team Sports", "School", "Rivalry"])
        self.assertIn("manga tag analyzer", client.calls[0]["prompt"])

    async def test_call_timeout_degrades(self):
        client = FakeCompletionClient('["late"]', delay=0.5)
        context = RequestContext(call_timeout=0.05)
        outcome = await extract_tags(client, text="x", media_type=MediaType.GALGAME, model="m", context=context)
        self.assertEqual(outcome.value, [])
        self.assertTrue(outcome.degraded)

    async def test_cancelled_context_propagates(self):
        client = FakeCompletionClient('["x"]')
        context = RequestContext()
        context.cancel("gone")
        with self.assertRaises(RequestCancelled):
            await extract_tags(client, text="x", media_type=MediaType.GALGAME, model="m", context=context)
        self.assertEqual(client.calls, [])


class TestScoreSimilarity(unittest.IsolatedAsyncioTestCase):

    async def test_empty_description_short_circuits(self):
        client = FakeCompletionClient("0.9")
        outcome = await score_similarity(client, user_text="a", description="", model="m")
        self.assertEqual(outcome.value, 0.0)
        self.assertEqual(client.calls, [])

    async def test_numeric_reply(self):
        client = FakeCompletionClient("0.64")
        outcome = await score_similarity(client, user_text="school", description="a school story", model="m")
        self.assertEqual(outcome.value, 0.64)
        self.assertFalse(outcome.degraded)
        self.assertEqual(client.calls[0]["temperature"], 0)
        self.assertEqual(client.calls[0]["max_tokens"], 20)

    async def test_malformed_reply_scores_zero(self):
        client = FakeCompletionClient("quite similar")
        outcome = await score_similarity(client, user_text="a", description="b", model="m")
        self.assertEqual(outcome.value, 0.0)
        self.assertTrue(outcome.degraded)

    async def test_failure_scores_zero(self):
        client = FakeCompletionClient(RuntimeError("down"))
        outcome = await score_similarity(client, user_text="a", description="b", model="m")
        self.assertEqual(outcome.value, 0.0)
        self.assertTrue(outcome.degraded)


class TestCompletionClient(unittest.IsolatedAsyncioTestCase):

    async def test_posts_chat_completion(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = request_json(request)
            return json_response({"choices": [{"message": {"role": "assistant", "content": " [\"A\"] "}}]})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = CompletionClient(api_key="secret", base_url="https://llm.test/", timeout_seconds=5, http_client=http)
        text = await client.chat_text(prompt="hi", model="deepseek-chat", system="sys", temperature=0.4, max_tokens=300)
        await client.aclose()

        self.assertEqual(text, '["A"]')
        self.assertEqual(seen["url"], "https://llm.test/chat/completions")
        self.assertEqual(seen["auth"], "Bearer secret")
        self.assertEqual(seen["body"]["messages"][0], {"role": "system", "content": "sys"})
        self.assertEqual(seen["body"]["max_tokens"], 300)

    async def test_http_error_raises_completion_error(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(401, text="bad key")))
        client = CompletionClient(api_key="secret", base_url="https://llm.test", timeout_seconds=5, http_client=http)
        with self.assertRaises(CompletionError):
            await client.chat_text(prompt="hi", model="m")
        await client.aclose()

    async def test_missing_key_fails_without_network(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return json_response({})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = CompletionClient(api_key="", base_url="https://llm.test", timeout_seconds=5, http_client=http)
        self.assertFalse(client.has_api_key)
        with self.assertRaises(CompletionError):
            await client.chat_text(prompt="hi", model="m")
        self.assertEqual(calls, [])
        await client.aclose()


if __name__ == "__main__":
    unittest.main()
