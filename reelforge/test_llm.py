import unittest
from unittest.mock import AsyncMock, MagicMock, patch

import requests

from reelforge.errors import BackendError, NonRetryableBackendError
from reelforge.llm import LLMClient, parse_story_outline
from reelforge.testing import run


def completion(content, status_code=200):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = ""
    resp.json.return_value = {"choices": [{"message": {"content": content}}]}
    return resp


def failure(status_code, text="error"):
    resp = MagicMock()
    resp.status_code = status_code
    resp.text = text
    return resp


class TestLLMClient(unittest.TestCase):
    def setUp(self):
        self.client = LLMClient(api_url="https://llm.example/v1/chat/completions", api_key="secret",
                                model="test-model", max_retries=3, retry_delay=1.0)
        self.client._sleep = AsyncMock()

    @patch("reelforge.llm.requests.post")
    def test_chat_returns_content(self, mock_post):
        mock_post.return_value = completion("hello")

        self.assertEqual(run(self.client.chat([{"role": "user", "content": "hi"}])), "hello")
        kwargs = mock_post.call_args.kwargs
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer secret")
        self.assertEqual(kwargs["json"]["model"], "test-model")

    @patch("reelforge.llm.requests.post")
    def test_no_retry_on_auth_failure(self, mock_post):
        mock_post.return_value = failure(401)
        with self.assertRaises(NonRetryableBackendError):
            run(self.client.chat([{"role": "user", "content": "hi"}]))
        self.assertEqual(mock_post.call_count, 1)
        self.client._sleep.assert_not_awaited()

    @patch("reelforge.llm.requests.post")
    def test_bad_request_not_retried(self, mock_post):
        mock_post.return_value = failure(400, "max_tokens too large")
        with self.assertRaises(NonRetryableBackendError):
            run(self.client.chat([]))
        self.assertEqual(mock_post.call_count, 1)

    @patch("reelforge.llm.requests.post")
    def test_server_errors_retried_with_backoff(self, mock_post):
        mock_post.side_effect = [failure(503), requests.ConnectionError("reset"), completion("third time")]

        self.assertEqual(run(self.client.chat([])), "third time")
        self.assertEqual([c.args[0] for c in self.client._sleep.await_args_list], [1.0, 2.0])

    @patch("reelforge.llm.requests.post")
    def test_gives_up(self, mock_post):
        mock_post.return_value = failure(500)
        with self.assertRaises(BackendError) as ctx:
            run(self.client.chat([]))
        self.assertEqual(mock_post.call_count, 3)
        self.assertIn("after 3 attempts", ctx.exception.message)

    def test_missing_key(self):
        client = LLMClient(api_key="")
        with self.assertRaises(NonRetryableBackendError):
            run(client.chat([]))

    def test_story_outline_parsed(self):
        self.client.chat = AsyncMock(return_value="Hook: A bottle on the rocks\nMiddle: The keeper searches\n"
                                                   "and finds a map\nEnding: He sails at dawn")
        outline = run(self.client.generate_story_outline("lighthouse"))
        self.assertEqual(outline.hook, "A bottle on the rocks")
        self.assertEqual(outline.middle_structure, "The keeper searches\nand finds a map")
        self.assertEqual(outline.ending, "He sails at dawn")

    def test_outline_missing_sections(self):
        outline = parse_story_outline("Just some prose")
        self.assertEqual((outline.hook, outline.middle_structure, outline.ending), ("", "", ""))

    def test_short_voiceover_not_sent(self):
        self.client.chat = AsyncMock()
        text = "The light turns once more."
        self.assertEqual(run(self.client.compress_voiceover(text, 4)), text)
        self.client.chat.assert_not_awaited()

    def test_long_voiceover_compressed(self):
        self.client.chat = AsyncMock(return_value="  Short version.  ")
        self.assertEqual(run(self.client.compress_voiceover("word " * 40, 4)), "Short version.")
        self.assertIn("approximately 10 words", self.client.chat.await_args.args[0][1]["content"])


if __name__ == "__main__":
    unittest.main()
