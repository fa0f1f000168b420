import pytest

from interpreter import Interpreter, VmConfig
from lexer import SourceType


@pytest.fixture
def make_vm():
    """Build an interpreter over STL source with scripted input and captured output."""

    def _make(source, *, heap_size=16, lines=(), chars="", suppress_output=False, services=None):
        output = []
        line_iter = iter(lines)
        char_iter = iter(chars)
        config = VmConfig(source_type=SourceType.STL, heap_size=heap_size, suppress_output=suppress_output)
        vm = Interpreter.from_source(
            source,
            config=config,
            services=services,
            input_provider=lambda: next(line_iter, ""),
            char_provider=lambda: next(char_iter, ""),
            output_sink=output.append,
        )
        return vm, output

    return _make
