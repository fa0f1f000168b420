from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from lexer import Lexer, SourceType, Token, TokenKind, WSParseError


INT32_MIN = -(2 ** 31)
INT32_MAX = 2 ** 31 - 1


class UnrecognizedFamilyError(WSParseError):
    """No operation family prefix matches the tokens."""


class UnrecognizedCommandError(WSParseError):
    """No command of the selected family matches the tokens."""


class UnterminatedOperandError(WSParseError):
    """The source ended before an operand's line feed."""


class MalformedOperandError(WSParseError):
    """A number operand lacks its sign or does not fit 32 bits."""


class Family(Enum):
    STACK = "stack"
    ARITHMETIC = "arithmetic"
    HEAP = "heap"
    FLOW = "flow"
    IO = "io"


class OperandKind(Enum):
    NUMBER = "number"
    LABEL = "label"


class Command(Enum):
    PUSH = "push"
    DUPLICATE = "duplicate"
    COPY_NTH = "copy_nth"
    SWAP = "swap"
    DISCARD = "discard"
    SLIDE_N = "slide_n"

    ADD = "add"
    SUBTRACT = "subtract"
    MULTIPLY = "multiply"
    DIVIDE = "divide"
    MODULO = "modulo"

    STORE = "store"
    RETRIEVE = "retrieve"

    MARK = "mark"
    CALL = "call"
    JUMP = "jump"
    JUMP_IF_ZERO = "jump_if_zero"
    JUMP_IF_NEGATIVE = "jump_if_negative"
    RETURN = "return"
    EXIT = "exit"

    OUTPUT_CHARACTER = "output_character"
    OUTPUT_NUMBER = "output_number"
    READ_CHARACTER = "read_character"
    READ_NUMBER = "read_number"


S, T, L = TokenKind.SPACE, TokenKind.TAB, TokenKind.LF

FAMILY_PREFIXES: Dict[Tuple[TokenKind, ...], Family] = {
    (S,): Family.STACK,
    (T, S): Family.ARITHMETIC,
    (T, T): Family.HEAP,
    (L,): Family.FLOW,
    (T, L): Family.IO,
}

COMMAND_CODES: Dict[Family, Dict[Tuple[TokenKind, ...], Command]] = {
    Family.STACK: {
        (S,): Command.PUSH,
        (L, S): Command.DUPLICATE,
        (T, S): Command.COPY_NTH,
        (L, T): Command.SWAP,
        (L, L): Command.DISCARD,
        (T, L): Command.SLIDE_N,
    },
    Family.ARITHMETIC: {
        (S, S): Command.ADD,
        (S, T): Command.SUBTRACT,
        (S, L): Command.MULTIPLY,
        (T, S): Command.DIVIDE,
        (T, T): Command.MODULO,
    },
    Family.HEAP: {
        (S,): Command.STORE,
        (T,): Command.RETRIEVE,
    },
    Family.FLOW: {
        (S, S): Command.MARK,
        (S, T): Command.CALL,
        (S, L): Command.JUMP,
        (T, S): Command.JUMP_IF_ZERO,
        (T, T): Command.JUMP_IF_NEGATIVE,
        (T, L): Command.RETURN,
        (L, L): Command.EXIT,
    },
    Family.IO: {
        (S, S): Command.OUTPUT_CHARACTER,
        (S, T): Command.OUTPUT_NUMBER,
        (T, S): Command.READ_CHARACTER,
        (T, T): Command.READ_NUMBER,
    },
}

COMMAND_FAMILY: Dict[Command, Family] = {
    command: family for family, codes in COMMAND_CODES.items() for command in codes.values()
}

OPERAND_KINDS: Dict[Command, OperandKind] = {
    Command.PUSH: OperandKind.NUMBER,
    Command.COPY_NTH: OperandKind.NUMBER,
    Command.SLIDE_N: OperandKind.NUMBER,
    Command.MARK: OperandKind.LABEL,
    Command.CALL: OperandKind.LABEL,
    Command.JUMP: OperandKind.LABEL,
    Command.JUMP_IF_ZERO: OperandKind.LABEL,
    Command.JUMP_IF_NEGATIVE: OperandKind.LABEL,
}


@dataclass(frozen=True)
class SourceLocation:
    file: str
    line: int
    column: int


@dataclass(frozen=True)
class NumberOperand:
    value: int

    def __str__(self) -> str:
        return str(self.value)


@dataclass(frozen=True)
class LabelOperand:
    # Label bits as a string of '0'/'1'; may be empty.
    name: str
    target: Optional[int] = None

    def __str__(self) -> str:
        shown = f"'{self.name}'"
        if self.target is None:
            return f"{shown} -> ?"
        return f"{shown} -> {self.target}"


Operand = Union[NumberOperand, LabelOperand]


@dataclass(frozen=True)
class Instruction:
    family: Family
    command: Command
    operand: Optional[Operand] = None
    location: Optional[SourceLocation] = field(default=None, compare=False, repr=False)

    def __str__(self) -> str:
        if self.operand is None:
            return self.command.value
        return f"{self.command.value}({self.operand})"


@dataclass(frozen=True)
class Program:
    instructions: Tuple[Instruction, ...]

    def __len__(self) -> int:
        return len(self.instructions)

    def __getitem__(self, index: int) -> Instruction:
        return self.instructions[index]

    def __iter__(self) -> Iterator[Instruction]:
        return iter(self.instructions)


class Parser:
    """Decodes a token stream into instructions.

    Iterating a parser yields instructions one by one and raises a
    ``WSParseError`` subclass at the first ill-formed grouping. ``parse``
    drains the stream and resolves labels.
    """

    def __init__(self, tokens: Iterable[Token], filename: Optional[str] = None) -> None:
        self._tokens = iter(tokens)
        self.filename = filename if filename is not None else getattr(tokens, "filename", "<string>")
        self._last: Optional[Token] = None

    def __iter__(self) -> Iterator[Instruction]:
        while True:
            first = self._next()
            if first is None:
                return
            yield self._instruction(first)

    def decode(self) -> List[Instruction]:
        return list(self)

    def parse(self) -> Program:
        return resolve_labels(self.decode())

    def _next(self) -> Optional[Token]:
        token = next(self._tokens, None)
        if token is not None:
            self._last = token
        return token

    def _location(self, token: Optional[Token]) -> SourceLocation:
        token = token or self._last
        if token is None:
            return SourceLocation(self.filename, 0, 0)
        return SourceLocation(self.filename, token.line, token.column)

    def _error(self, cls: type, message: str, token: Optional[Token]) -> WSParseError:
        loc = self._location(token)
        return cls(f"{message} at {loc.file}:{loc.line}:{loc.column}", line=loc.line, column=loc.column)

    def _match(self, table: Dict[Tuple[TokenKind, ...], object], first: Token, error_cls: type, what: str) -> object:
        codes: Tuple[TokenKind, ...] = (first.kind,)
        while True:
            if codes in table:
                return table[codes]
            if not any(key[: len(codes)] == codes for key in table):
                spelled = "".join(kind.value for kind in codes)
                raise self._error(error_cls, f"Unrecognized {what} '{spelled}'", first)
            token = self._next()
            if token is None:
                raise self._error(error_cls, f"Unexpected end of input while reading {what}", first)
            codes += (token.kind,)

    def _instruction(self, first: Token) -> Instruction:
        location = self._location(first)
        family = self._match(FAMILY_PREFIXES, first, UnrecognizedFamilyError, "family")
        token = self._next()
        if token is None:
            raise self._error(UnrecognizedCommandError, f"Unexpected end of input after {family.value} prefix", first)
        command = self._match(COMMAND_CODES[family], token, UnrecognizedCommandError, f"{family.value} command")
        operand: Optional[Operand] = None
        kind = OPERAND_KINDS.get(command)
        if kind is OperandKind.NUMBER:
            operand = self._number(first)
        elif kind is OperandKind.LABEL:
            operand = LabelOperand(self._bits(first))
        return Instruction(family, command, operand, location)

    def _bits(self, start: Token) -> str:
        bits: List[str] = []
        while True:
            token = self._next()
            if token is None:
                raise self._error(UnterminatedOperandError, "Unterminated operand", start)
            if token.kind is L:
                return "".join(bits)
            bits.append("1" if token.kind is T else "0")

    def _number(self, start: Token) -> NumberOperand:
        sign = self._next()
        if sign is None:
            raise self._error(UnterminatedOperandError, "Unterminated operand", start)
        if sign.kind is L:
            raise self._error(MalformedOperandError, "Number operand is missing its sign", sign)
        bits = self._bits(start)
        magnitude = int(bits, 2) if bits else 0
        value = -magnitude if sign.kind is T else magnitude
        if value < INT32_MIN or value > INT32_MAX:
            raise self._error(MalformedOperandError, f"Number {value} does not fit in 32 bits", start)
        return NumberOperand(value)


def build_label_table(instructions: Sequence[Instruction]) -> Dict[str, int]:
    labels: Dict[str, int] = {}
    for index, instr in enumerate(instructions):
        if instr.command is Command.MARK and isinstance(instr.operand, LabelOperand):
            # Duplicate marks: the last definition wins.
            labels[instr.operand.name] = index
    return labels


def resolve_labels(instructions: Sequence[Instruction]) -> Program:
    labels = build_label_table(instructions)
    resolved: List[Instruction] = []
    for instr in instructions:
        operand = instr.operand
        if isinstance(operand, LabelOperand) and operand.name in labels:
            instr = replace(instr, operand=replace(operand, target=labels[operand.name]))
        resolved.append(instr)
    return Program(tuple(resolved))


def parse_source(text: str, filename: str = "<string>", source_type: SourceType = SourceType.WHITESPACE) -> Program:
    return Parser(Lexer(text, filename, source_type), filename).parse()
