"""Tests for observer extensions and the step tracer."""

import textwrap

import pytest

from extensions import (
    ExtensionAPI,
    StepContext,
    WSExtensionError,
    build_default_services,
    format_step,
    load_runtime_services,
)
from interpreter import ExtensionHookError
from parser import Command, Family, Instruction, NumberOperand
from wsasm import EXIT, prog, push


def write_extension(tmp_path, body, name="observer.py"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(body), encoding="utf-8")
    return str(path)


def test_loads_extension_and_registers_hooks(tmp_path, make_vm):
    path = write_extension(
        tmp_path,
        """
        SPACEY_EXTENSION_NAME = "counter"
        calls = []

        def spacey_register(ext):
            @ext.on_event("program_end")
            def _done(interpreter):
                calls.append(("end", interpreter.instruction_count))

            @ext.every_n_steps(2)
            def _every_other(interpreter, ctx):
                calls.append(("step", ctx.step_index))
        """,
    )
    services = load_runtime_services([path])
    vm, _ = make_vm(prog(push(1), push(2), push(3), EXIT), services=services)
    vm.run()
    handler = services.hook_registry._events["program_end"][0][1]
    assert services.hook_registry._events["program_end"][0][2] == "counter"
    assert handler.__globals__["calls"] == [("step", 0), ("step", 2), ("end", 4)]


def test_missing_extension_file(tmp_path):
    with pytest.raises(WSExtensionError, match="not found"):
        load_runtime_services([str(tmp_path / "nope.py")])


def test_extension_without_register(tmp_path):
    path = write_extension(tmp_path, "VALUE = 1\n")
    with pytest.raises(WSExtensionError, match="spacey_register"):
        load_runtime_services([path])


def test_extension_api_version_mismatch(tmp_path):
    path = write_extension(
        tmp_path,
        """
        SPACEY_EXTENSION_API_VERSION = 99

        def spacey_register(ext):
            pass
        """,
    )
    with pytest.raises(WSExtensionError, match="requires API 99"):
        load_runtime_services([path])


def test_step_rule_interval_must_be_positive():
    api = ExtensionAPI(services=build_default_services(), ext_name="bad")
    with pytest.raises(WSExtensionError):
        api.every_n_steps(0, lambda interpreter, ctx: None)


def test_failing_step_rule_surfaces_as_hook_error(make_vm):
    services = build_default_services()

    def explode(interpreter, ctx):
        raise RuntimeError("boom")

    ExtensionAPI(services=services, ext_name="bad").every_n_steps(1, explode)
    vm, _ = make_vm(prog(EXIT), services=services)
    with pytest.raises(ExtensionHookError, match="boom"):
        vm.run()


def test_event_priority_order():
    services = build_default_services()
    api = ExtensionAPI(services=services, ext_name="order")
    seen = []
    api.on_event("program_start", lambda *_: seen.append("low"), priority=0)
    api.on_event("program_start", lambda *_: seen.append("high"), priority=10)
    services.hook_registry.emit("program_start", None)
    assert seen == ["high", "low"]


def test_format_step_without_heap():
    ctx = StepContext(
        step_index=4,
        instruction_pointer=2,
        instruction=Instruction(Family.STACK, Command.PUSH, NumberOperand(7)),
        stack=(1, 2),
        call_stack=(0,),
        heap=None,
    )
    assert format_step(ctx) == "[step 4] ip=2 push(7)\n  stack: [1, 2]\n  call stack: [0]"


def test_format_step_with_heap():
    ctx = StepContext(
        step_index=0,
        instruction_pointer=0,
        instruction=Instruction(Family.FLOW, Command.EXIT),
        stack=(),
        call_stack=(),
        heap={3: 10, 8: -1},
    )
    assert format_step(ctx).endswith("  heap: {3: 10, 8: -1}")


def test_no_step_rules_without_tracing():
    assert not build_default_services().hook_registry.has_step_rules
    assert build_default_services(debug=True).hook_registry.has_step_rules
    assert not build_default_services(debug=True).hook_registry.wants_heap
    assert build_default_services(debug_heap=True).hook_registry.wants_heap
