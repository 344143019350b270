"""
Tests for slide and topic parsing
"""

import json
from unittest.mock import Mock

import pytest

from agent_system.slides_parser import (
    SlidesParseError, parse_slides, parse_json_object, extract_topics, normalize_topics,
    FALLBACK_TOPICS, MAX_SLIDES
)

from tests.conftest import TEN_TOPICS


def no_fetch(url):
    raise AssertionError(f"unexpected fetch of {url}")


class TestParseSlides:
    """Tests for extracting slides from a finished task."""

    def test_slides_on_payload(self):
        slides = parse_slides({'slides': [
            {'title': ' Intro ', 'content': 'Hello', 'layout': 'title_slide', 'speaker_notes': 'Smile'},
            {'title': 'Body', 'content': 'World', 'layout': 'unknown', 'background_color': '#FFF'},
        ]}, no_fetch)

        assert slides[0] == {
            'title': 'Intro', 'content': 'Hello', 'layout': 'title_slide',
            'order_index': 0, 'speaker_notes': 'Smile'
        }
        assert slides[1]['layout'] == 'content'
        assert slides[1]['order_index'] == 1
        assert slides[1]['background_color'] == '#FFF'

    def test_json_attachment_is_fetched(self):
        fetcher = Mock(return_value={'slides': [{'title': 'A', 'content': 'B'}]})
        slides = parse_slides({'attachments': [
            {'type': 'image', 'url': 'https://files.example.com/cover.png'},
            {'type': 'json', 'url': 'https://files.example.com/slides.json'},
        ]}, fetcher)

        fetcher.assert_called_once_with('https://files.example.com/slides.json')
        assert slides[0]['title'] == 'A'

    def test_inline_attachment_content(self):
        content = json.dumps({'slides': [{'title': 'A', 'content': 'B'}]})
        slides = parse_slides({'attachments': [{'content_type': 'application/json', 'content': content}]}, no_fetch)
        assert len(slides) == 1

    def test_result_object(self):
        slides = parse_slides({'result': {'slides': [{'title': 'A', 'content': 'B'}]}}, no_fetch)
        assert slides[0]['content'] == 'B'

    def test_no_slides(self):
        with pytest.raises(SlidesParseError, match='No slides data found'):
            parse_slides({'output': 'done'}, no_fetch)

    def test_missing_title(self):
        with pytest.raises(SlidesParseError, match='Slide 1 is missing a valid title'):
            parse_slides({'slides': [{'title': 'A', 'content': 'B'}, {'content': 'C'}]}, no_fetch)

    def test_invalid_color(self):
        with pytest.raises(SlidesParseError, match='invalid background_color'):
            parse_slides({'slides': [{'title': 'A', 'content': 'B', 'background_color': 'red'}]}, no_fetch)

    def test_invalid_image_url(self):
        with pytest.raises(SlidesParseError, match='invalid background_image'):
            parse_slides({'slides': [{'title': 'A', 'content': 'B', 'background_image': 'not a url'}]}, no_fetch)

    def test_too_many_slides(self):
        raw = [{'title': f"S{i}", 'content': 'x'} for i in range(MAX_SLIDES + 1)]
        with pytest.raises(SlidesParseError, match='more than 50 slides'):
            parse_slides({'slides': raw}, no_fetch)

    def test_title_too_long(self):
        with pytest.raises(SlidesParseError, match='title exceeds maximum length'):
            parse_slides({'slides': [{'title': 'T' * 201, 'content': 'x'}]}, no_fetch)


class TestParseJsonObject:
    """Tests for pulling a JSON object out of model output."""

    def test_raw_json(self):
        assert parse_json_object('{"slides": []}') == {'slides': []}

    def test_fenced_block(self):
        assert parse_json_object('Sure!\n```json\n{"a": 1}\n```\nEnjoy') == {'a': 1}

    def test_outer_braces(self):
        assert parse_json_object('Result: {"a": {"b": 2}} done') == {'a': {'b': 2}}

    def test_no_object(self):
        with pytest.raises(SlidesParseError):
            parse_json_object('[1, 2, 3]')


class TestTopics:
    """Tests for topic extraction and normalization."""

    def test_json_array(self):
        assert extract_topics(json.dumps(TEN_TOPICS)) == TEN_TOPICS

    def test_fenced_array_in_prose(self):
        text = "Here are the topics:\n```json\n" + json.dumps(TEN_TOPICS) + "\n```"
        assert extract_topics(text) == TEN_TOPICS

    def test_numbered_lines(self):
        text = "\n".join(f"{i + 1}. {topic}" for i, topic in enumerate(TEN_TOPICS))
        assert extract_topics(text) == TEN_TOPICS

    def test_dict_with_topics(self):
        assert extract_topics({'topics': ['A', 1, 'B']}) == ['A', 'B']

    def test_normalize_keeps_exactly_ten(self):
        assert normalize_topics(TEN_TOPICS) == TEN_TOPICS

    def test_normalize_falls_back(self):
        assert normalize_topics(['A', 'B']) == FALLBACK_TOPICS
        assert normalize_topics(None) == FALLBACK_TOPICS
        assert normalize_topics(None) is not FALLBACK_TOPICS
