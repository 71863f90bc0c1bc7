"""Tests for the clarification transcript."""

from specforge.transcript import (
    add_assistant_message,
    add_user_message,
    create_transcript,
    exchange_count,
    format_for_display,
    format_for_prompt,
)


class TestCreateTranscript:
    def test_idea_opening(self):
        transcript = create_transcript("SYSTEM", "a todo app")
        assert transcript["display_messages"] == []
        assert transcript["api_messages"] == [
            {"role": "system", "content": "SYSTEM"},
            {"role": "user", "content": "App Idea:\n\na todo app"},
        ]

    def test_refinement_opening(self):
        transcript = create_transcript("SYSTEM", "add sharing", existing_spec="# Spec")
        opening = transcript["api_messages"][1]["content"]
        assert opening.startswith("Existing Specification to Refine:\n\n# Spec")
        assert opening.endswith("Refinement Goals:\n\nadd sharing")

    def test_refinement_without_goals(self):
        transcript = create_transcript("SYSTEM", "", existing_spec="# Spec")
        assert "No specific goals provided" in transcript["api_messages"][1]["content"]


class TestMessages:
    def test_add_messages_keeps_views_in_step(self):
        transcript = create_transcript("SYSTEM", "idea")
        transcript = add_assistant_message(transcript, "Who uses it?")
        transcript = add_user_message(transcript, "Teams")

        assert [m["content"] for m in transcript["display_messages"]] == ["Who uses it?", "Teams"]
        assert transcript["api_messages"][-2:] == [
            {"role": "assistant", "content": "Who uses it?"},
            {"role": "user", "content": "Teams"},
        ]
        assert all("timestamp" in m for m in transcript["display_messages"])

    def test_original_is_not_mutated(self):
        original = create_transcript("SYSTEM", "idea")
        add_user_message(original, "hello")
        assert original["display_messages"] == []
        assert len(original["api_messages"]) == 2

    def test_format_for_prompt(self):
        transcript = add_user_message(add_assistant_message(create_transcript("S", "i"), "Q?"), "A.")
        assert format_for_prompt(transcript) == "Assistant: Q?\n\nUser: A."

    def test_format_for_display_labels_writer(self):
        transcript = add_assistant_message(create_transcript("S", "i"), "Q?")
        assert format_for_display(transcript).startswith("**Spec Writer**")

    def test_exchange_count(self):
        transcript = create_transcript("S", "i")
        assert exchange_count(transcript) == 0
        transcript = add_assistant_message(add_user_message(add_assistant_message(transcript, "q"), "a"), "q2")
        assert exchange_count(transcript) == 2
