"""Tests for streamed tool-call argument assembly."""

import pytest

from formula_engine.services.stream_assembler import (
    StreamProtocolError,
    ToolCallAssembler,
    parse_tool_arguments,
)


class TestParseToolArguments:

    def test_object_parsed(self):
        assert parse_tool_arguments('{"bases": []}') == ({"bases": []}, None)

    def test_empty_buffer_is_empty_object(self):
        assert parse_tool_arguments("") == ({}, None)

    def test_invalid_json_reports_error(self):
        arguments, error = parse_tool_arguments('{"bases": [')
        assert arguments is None
        assert "not valid JSON" in error

    def test_non_object_reports_error(self):
        arguments, error = parse_tool_arguments("[1, 2]")
        assert arguments is None
        assert "list" in error


class TestToolCallAssembler:

    def test_fragments_joined_and_parsed_on_close(self):
        assembler = ToolCallAssembler()
        assembler.open(1, name="create_formula", call_id="toolu_1")
        for fragment in ['{"bases"', ': [], "totalMg', '": 420}']:
            assembler.append(1, fragment)

        call = assembler.close(1)

        assert call.name == "create_formula"
        assert call.id == "toolu_1"
        assert call.input == {"bases": [], "totalMg": 420}
        assert call.raw_arguments == '{"bases": [], "totalMg": 420}'
        assert not assembler.is_open(1)

    def test_truncated_buffer_closes_with_error(self):
        assembler = ToolCallAssembler()
        assembler.open(0, name="create_formula")
        assembler.append(0, '{"bases": [{"ingredient": "Gar')

        call = assembler.close(0)

        assert call.input is None
        assert call.error is not None

    def test_update_fills_identity_late(self):
        assembler = ToolCallAssembler()
        assembler.open(0)
        assembler.update(0, name="create_formula", call_id="call_9")
        call = assembler.close(0)
        assert (call.name, call.id) == ("create_formula", "call_9")

    def test_close_all_in_open_order(self):
        assembler = ToolCallAssembler()
        assembler.open(2, name="second")
        assembler.open(0, name="first")
        calls = assembler.close_all()
        assert [c.name for c in calls] == ["second", "first"]
        assert assembler.open_keys == []

    def test_key_reusable_after_close(self):
        assembler = ToolCallAssembler()
        assembler.open(0, name="a")
        assembler.close(0)
        assembler.open(0, name="b")
        assert assembler.close(0).name == "b"

    def test_protocol_violations(self):
        assembler = ToolCallAssembler()
        with pytest.raises(StreamProtocolError):
            assembler.append(5, "{}")
        assembler.open(1)
        with pytest.raises(StreamProtocolError):
            assembler.open(1)
        with pytest.raises(StreamProtocolError):
            assembler.close(3)
