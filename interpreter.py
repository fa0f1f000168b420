from __future__ import annotations
import json
import re
import sys
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional

import numpy as np
from numpy.typing import NDArray

import console
from extensions import HookRegistry, RuntimeServices, StepContext, build_default_services
from lexer import SourceType, WSError
from parser import (
    INT32_MAX,
    Command,
    Family,
    Instruction,
    LabelOperand,
    NumberOperand,
    Program,
    parse_source,
)


DEFAULT_HEAP_SIZE = 524288

# Number of executed steps kept for error reports.
STEP_HISTORY = 32

SURROGATE_LOW = 0xD800
SURROGATE_HIGH = 0xDFFF

# ReadNumber accepts ASCII decimal digits with an optional sign.
_INTEGER = re.compile(r"[+-]?[0-9]+")


class WSRuntimeError(WSError):
    """Raised for execution faults."""

    def __init__(
        self,
        message: str,
        *,
        instruction: Optional[Instruction] = None,
        instruction_pointer: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.instruction = instruction
        self.instruction_pointer = instruction_pointer
        self.step_index: Optional[int] = None


class InternalConsistencyError(WSRuntimeError):
    """An instruction reached a handler it does not belong to, or lacks its operand.

    Only a decoder defect can produce this; user programs never should.
    """

    def __init__(self, instruction: Instruction) -> None:
        super().__init__(
            f"Decoder delivered an inconsistent instruction: {instruction!r}",
            instruction=instruction,
        )


class StackUnderflowError(WSRuntimeError):
    def __init__(self, instruction: Instruction, *, needed: int, present: int, what: str = "stack") -> None:
        super().__init__(
            f"{what} underflow: {instruction} needs {needed} value(s), {present} present",
            instruction=instruction,
        )
        self.needed = needed
        self.present = present
        self.what = what


class BoundsViolationError(WSRuntimeError):
    def __init__(self, instruction: Instruction, value: int, low: int, high: int, *, reason: str = "") -> None:
        message = f"Number out of bounds for {instruction}: expected in [{low}, {high}] but was {value}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, instruction=instruction)
        self.reason = reason
        self.value = value
        self.low = low
        self.high = high


class MissingTerminationError(WSRuntimeError):
    def __init__(self, instruction: Optional[Instruction]) -> None:
        last = "nothing" if instruction is None else str(instruction)
        super().__init__(
            f"Program ended without exit; last executed instruction: {last}",
            instruction=instruction,
        )


class InputFaultError(WSRuntimeError):
    def __init__(self, instruction: Instruction, reason: str) -> None:
        super().__init__(f"Input error in {instruction}: {reason}", instruction=instruction)
        self.reason = reason


class UnresolvedLabelError(WSRuntimeError):
    def __init__(self, instruction: Instruction) -> None:
        name = instruction.operand.name if isinstance(instruction.operand, LabelOperand) else "?"
        super().__init__(f"No mark defines label '{name}' used by {instruction}", instruction=instruction)


class ExtensionHookError(WSRuntimeError):
    pass


@dataclass
class VmConfig:
    file_name: str = "<string>"
    source_type: SourceType = SourceType.WHITESPACE
    heap_size: int = DEFAULT_HEAP_SIZE
    raw: bool = False
    debug: bool = False
    debug_heap: bool = False
    suppress_output: bool = False

    def __post_init__(self) -> None:
        if self.heap_size < 0:
            raise ValueError(f"heap size must be non-negative, got {self.heap_size}")


def load_program(config: VmConfig) -> Program:
    """Read and decode the source file named by ``config``.

    Raises OSError when the file cannot be read and WSParseError when it does
    not decode.
    """
    with open(config.file_name, "r", encoding="utf-8") as handle:
        text = handle.read()
    return parse_source(text, config.file_name, config.source_type)


@dataclass
class StateEntry:
    step_index: int
    instruction_pointer: int
    instruction: Instruction


class StateLogger:
    def __init__(self, history: int = STEP_HISTORY) -> None:
        self.entries: Deque[StateEntry] = deque(maxlen=history)

    def record(self, *, step_index: int, instruction_pointer: int, instruction: Instruction) -> StateEntry:
        entry = StateEntry(step_index=step_index, instruction_pointer=instruction_pointer, instruction=instruction)
        self.entries.append(entry)
        return entry

    def clear(self) -> None:
        self.entries.clear()


def _wrap(value: int) -> int:
    # Two's complement wrap into the 32-bit domain.
    return int(np.int64(value).astype(np.int32))


def _div(left: int, right: int) -> int:
    quotient = abs(left) // abs(right)
    return quotient if (left < 0) == (right < 0) else -quotient


def _mod(left: int, right: int) -> int:
    return left - right * _div(left, right)


_ARITHMETIC: Dict[Command, Callable[[int, int], int]] = {
    Command.ADD: lambda a, b: _wrap(a + b),
    Command.SUBTRACT: lambda a, b: _wrap(a - b),
    Command.MULTIPLY: lambda a, b: _wrap(a * b),
    Command.DIVIDE: lambda a, b: _wrap(_div(a, b)),
    Command.MODULO: lambda a, b: _wrap(_mod(a, b)),
}


class Interpreter:
    def __init__(
        self,
        program: Program,
        *,
        config: Optional[VmConfig] = None,
        services: Optional[RuntimeServices] = None,
        input_provider: Optional[Callable[[], str]] = None,
        char_provider: Optional[Callable[[], str]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.program = program
        self.config = config or VmConfig()
        self.services = services or build_default_services(debug=self.config.debug, debug_heap=self.config.debug_heap)
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.input_provider = input_provider or console.read_line
        self.char_provider = char_provider or console.read_char
        self.output_sink = output_sink or console.emit
        # When true, program output is dropped instead of forwarded.
        self.shushed: bool = self.config.suppress_output

        self.stack: List[int] = []
        self.call_stack: List[int] = []
        self.heap: NDArray[np.int32] = np.zeros(self.config.heap_size, dtype=np.int32)
        self.instruction_pointer = 0
        self.done = False
        self.instruction_count = 0
        self.last_instruction: Optional[Instruction] = None
        self.logger = StateLogger()

        self._handlers: Dict[Family, Callable[[Instruction], None]] = {
            Family.STACK: self._stack,
            Family.ARITHMETIC: self._arithmetic,
            Family.HEAP: self._heap,
            Family.FLOW: self._flow,
            Family.IO: self._io,
        }

    @classmethod
    def from_source(cls, text: str, *, config: Optional[VmConfig] = None, **kwargs: Any) -> "Interpreter":
        config = config or VmConfig()
        program = parse_source(text, config.file_name, config.source_type)
        return cls(program, config=config, **kwargs)

    @classmethod
    def from_config(cls, config: VmConfig, **kwargs: Any) -> "Interpreter":
        return cls(load_program(config), config=config, **kwargs)

    @property
    def heap_size(self) -> int:
        return int(self.heap.shape[0])

    def next_instruction(self) -> Optional[Instruction]:
        if self.done or self.instruction_pointer >= len(self.program):
            return None
        return self.program[self.instruction_pointer]

    def run(self) -> None:
        self._emit_event("program_start", self)
        try:
            while self.next_instruction() is not None:
                self.step()
            if not self.done:
                raise MissingTerminationError(self.last_instruction)
        except WSRuntimeError as error:
            if error.step_index is None and self.logger.entries:
                error.step_index = self.logger.entries[-1].step_index
            try:
                self._emit_event("on_error", self, error)
            except WSRuntimeError as hook_error:
                # The fault that stopped the program stays the reported error.
                raise error from hook_error
            raise
        self._emit_event("program_end", self)

    def step(self) -> None:
        instr = self.next_instruction()
        if instr is None:
            return
        if self.hook_registry.has_step_rules:
            self._before_step(instr)
        step_index = self.instruction_count
        ip = self.instruction_pointer
        self.logger.record(step_index=step_index, instruction_pointer=ip, instruction=instr)
        self.instruction_count += 1
        self.last_instruction = instr
        try:
            self._handlers[instr.family](instr)
        except WSRuntimeError as error:
            if error.instruction_pointer is None:
                error.instruction_pointer = ip
            error.step_index = step_index
            raise
        finally:
            # Control transfers target the mark itself; this advance moves past it.
            self.instruction_pointer += 1

    def reset(self) -> None:
        """Restore the initial machine state without decoding the source again."""
        self.stack.clear()
        self.call_stack.clear()
        self.heap.fill(0)
        self.instruction_pointer = 0
        self.done = False
        self.instruction_count = 0
        self.last_instruction = None
        self.logger.clear()

    def heap_dump(self) -> Dict[int, int]:
        return {int(addr): int(self.heap[addr]) for addr in np.flatnonzero(self.heap)}

    # ---- operand helpers ----

    def _number(self, instr: Instruction) -> int:
        if not isinstance(instr.operand, NumberOperand):
            raise InternalConsistencyError(instr)
        return instr.operand.value

    def _label(self, instr: Instruction) -> LabelOperand:
        if not isinstance(instr.operand, LabelOperand):
            raise InternalConsistencyError(instr)
        return instr.operand

    def _target(self, instr: Instruction) -> int:
        target = self._label(instr).target
        if target is None:
            raise UnresolvedLabelError(instr)
        return target

    def _require(self, instr: Instruction, needed: int) -> None:
        if len(self.stack) < needed:
            raise StackUnderflowError(instr, needed=needed, present=len(self.stack))

    def _check_address(self, instr: Instruction, addr: int) -> None:
        if addr < 0 or addr >= self.heap_size:
            raise BoundsViolationError(instr, addr, 0, self.heap_size - 1)

    # ---- families ----

    def _stack(self, instr: Instruction) -> None:
        cmd = instr.command
        stack = self.stack
        if cmd is Command.PUSH:
            stack.append(self._number(instr))
            return
        if cmd is Command.DUPLICATE:
            self._require(instr, 1)
            stack.append(stack[-1])
            return
        if cmd is Command.COPY_NTH:
            # Absolute index from the bottom of the stack.
            index = self._number(instr)
            if index < 0 or index >= len(stack):
                raise BoundsViolationError(instr, index, 0, len(stack) - 1)
            stack.append(stack[index])
            return
        if cmd is Command.SWAP:
            self._require(instr, 2)
            stack[-1], stack[-2] = stack[-2], stack[-1]
            return
        if cmd is Command.DISCARD:
            self._require(instr, 1)
            stack.pop()
            return
        if cmd is Command.SLIDE_N:
            count = self._number(instr)
            self._require(instr, 1)
            if count < 0:
                raise BoundsViolationError(instr, count, 0, INT32_MAX)
            top = stack.pop()
            del stack[max(0, len(stack) - count):]
            stack.append(top)
            return
        raise InternalConsistencyError(instr)

    def _arithmetic(self, instr: Instruction) -> None:
        op = _ARITHMETIC.get(instr.command)
        if op is None:
            raise InternalConsistencyError(instr)
        self._require(instr, 2)
        stack = self.stack
        left, right = stack[-2], stack[-1]
        if right == 0 and instr.command in (Command.DIVIDE, Command.MODULO):
            raise ZeroDivisionError(f"integer division by zero in {instr}")
        del stack[-2:]
        stack.append(op(left, right))

    def _heap(self, instr: Instruction) -> None:
        cmd = instr.command
        stack = self.stack
        if cmd is Command.STORE:
            self._require(instr, 2)
            addr, value = stack[-2], stack[-1]
            self._check_address(instr, addr)
            del stack[-2:]
            self.heap[addr] = value
            return
        if cmd is Command.RETRIEVE:
            self._require(instr, 1)
            addr = stack[-1]
            self._check_address(instr, addr)
            stack[-1] = int(self.heap[addr])
            return
        raise InternalConsistencyError(instr)

    def _flow(self, instr: Instruction) -> None:
        cmd = instr.command
        if cmd is Command.MARK:
            self._label(instr)
            return
        if cmd is Command.CALL:
            target = self._target(instr)
            self.call_stack.append(self.instruction_pointer)
            self.instruction_pointer = target
            return
        if cmd is Command.JUMP:
            self.instruction_pointer = self._target(instr)
            return
        if cmd is Command.JUMP_IF_ZERO or cmd is Command.JUMP_IF_NEGATIVE:
            self._label(instr)
            self._require(instr, 1)
            value = self.stack.pop()
            taken = value == 0 if cmd is Command.JUMP_IF_ZERO else value < 0
            if taken:
                self.instruction_pointer = self._target(instr)
            return
        if cmd is Command.RETURN:
            if not self.call_stack:
                raise StackUnderflowError(instr, needed=1, present=0, what="call stack")
            self.instruction_pointer = self.call_stack.pop()
            return
        if cmd is Command.EXIT:
            self.done = True
            return
        raise InternalConsistencyError(instr)

    def _io(self, instr: Instruction) -> None:
        cmd = instr.command
        stack = self.stack
        if cmd is Command.OUTPUT_CHARACTER:
            self._require(instr, 1)
            code = stack[-1]
            if code < 0 or code > sys.maxunicode:
                raise BoundsViolationError(instr, code, 0, sys.maxunicode)
            if SURROGATE_LOW <= code <= SURROGATE_HIGH:
                raise BoundsViolationError(instr, code, 0, sys.maxunicode, reason="surrogate code points cannot be written")
            stack.pop()
            if not self.shushed:
                self.output_sink(chr(code))
            return
        if cmd is Command.OUTPUT_NUMBER:
            self._require(instr, 1)
            number = stack.pop()
            if not self.shushed:
                self.output_sink(str(number))
            return
        if cmd is Command.READ_CHARACTER:
            self._require(instr, 1)
            addr = stack[-1]
            self._check_address(instr, addr)
            stack.pop()
            text = self._read(instr, self.char_provider)
            if not text:
                raise InputFaultError(instr, "end of input")
            self.heap[addr] = ord(text[0])
            return
        if cmd is Command.READ_NUMBER:
            self._require(instr, 1)
            addr = stack[-1]
            self._check_address(instr, addr)
            stack.pop()
            line = self._read(instr, self.input_provider)
            if not line:
                raise InputFaultError(instr, "end of input")
            text = line.strip()
            if not _INTEGER.fullmatch(text):
                raise InputFaultError(instr, f"not an integer: {text!r}")
            number = int(text)
            if number < -INT32_MAX - 1 or number > INT32_MAX:
                raise InputFaultError(instr, f"{number} does not fit in 32 bits")
            self.heap[addr] = number
            return
        raise InternalConsistencyError(instr)

    def _read(self, instr: Instruction, provider: Callable[[], str]) -> str:
        try:
            return provider()
        except (OSError, EOFError) as exc:
            raise InputFaultError(instr, str(exc) or exc.__class__.__name__) from exc

    # ---- hooks ----

    def _before_step(self, instr: Instruction) -> None:
        ctx = StepContext(
            step_index=self.instruction_count,
            instruction_pointer=self.instruction_pointer,
            instruction=instr,
            stack=tuple(self.stack),
            call_stack=tuple(self.call_stack),
            heap=self.heap_dump() if self.hook_registry.wants_heap else None,
        )
        try:
            self.hook_registry.before_step(self, ctx)
        except WSRuntimeError:
            raise
        except Exception as exc:
            raise ExtensionHookError(
                f"Extension step rule failed: {exc}",
                instruction=instr,
                instruction_pointer=self.instruction_pointer,
            ) from exc

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except WSRuntimeError:
            raise
        except Exception as exc:
            raise ExtensionHookError(
                f"Extension hook '{event}' failed: {exc}",
                instruction=self.last_instruction,
            ) from exc


@dataclass
class TracebackFrame:
    name: str
    instruction_pointer: Optional[int]
    instruction: Optional[Instruction]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self, error: WSRuntimeError) -> List[TracebackFrame]:
        program = self.interpreter.program
        frames: List[TracebackFrame] = [TracebackFrame(name="<top-level>", instruction_pointer=None, instruction=None)]
        for pos in self.interpreter.call_stack:
            instr = program[pos] if 0 <= pos < len(program) else None
            frames[-1] = TracebackFrame(name=frames[-1].name, instruction_pointer=pos, instruction=instr)
            label = instr.operand.name if instr is not None and isinstance(instr.operand, LabelOperand) else "?"
            frames.append(TracebackFrame(name=f"label '{label}'", instruction_pointer=None, instruction=None))
        frames[-1] = TracebackFrame(
            name=frames[-1].name,
            instruction_pointer=error.instruction_pointer,
            instruction=error.instruction,
        )
        return frames

    def format_text(self, error: WSRuntimeError, verbose: bool = False) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames(error):
            where = "<end of program>" if frame.instruction_pointer is None else f"instruction {frame.instruction_pointer}"
            location = frame.instruction.location if frame.instruction is not None else None
            if location is not None:
                lines.append(
                    f"  File \"{location.file}\", line {location.line}, column {location.column}, {where}, in {frame.name}"
                )
            else:
                lines.append(f"  {where}, in {frame.name}")
            if frame.instruction is not None:
                lines.append(f"    {frame.instruction}")
        if verbose:
            lines.append(f"  Stack: {self.interpreter.stack}")
            lines.append("  Recent steps:")
            for entry in self.interpreter.logger.entries:
                lines.append(f"    #{entry.step_index} ip={entry.instruction_pointer} {entry.instruction}")
        step = "" if error.step_index is None else f" (step {error.step_index})"
        lines.append(f"{error.__class__.__name__}: {error.message}{step}")
        return "\n".join(lines)

    def to_json(self, error: WSRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames(error)):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.instruction_pointer is not None:
                entry["instruction_pointer"] = frame.instruction_pointer
            if frame.instruction is not None:
                entry["instruction"] = str(frame.instruction)
                if frame.instruction.location is not None:
                    entry["source_location"] = {
                        "file": frame.instruction.location.file,
                        "line": frame.instruction.location.line,
                        "column": frame.instruction.location.column,
                    }
            frames_json.append(entry)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": error.message,
                "failing_step_index": error.step_index,
            },
            "stack": list(self.interpreter.stack),
            "call_stack": list(self.interpreter.call_stack),
            "recent_steps": [
                {"step_index": e.step_index, "instruction_pointer": e.instruction_pointer, "instruction": str(e.instruction)}
                for e in self.interpreter.logger.entries
            ],
            "traceback": frames_json,
        }
        return json.dumps(data, indent=2)
