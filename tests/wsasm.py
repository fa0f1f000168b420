"""Tiny assembler producing STL-encoded source for tests."""


def number(n: int) -> str:
    sign = "S" if n >= 0 else "T"
    bits = format(abs(n), "b") if n else ""
    return sign + bits.replace("0", "S").replace("1", "T") + "L"


def label(name: str) -> str:
    return name.replace("0", "S").replace("1", "T") + "L"


def push(n: int) -> str:
    return "SS" + number(n)


def copy(n: int) -> str:
    return "STS" + number(n)


def slide(n: int) -> str:
    return "STL" + number(n)


def mark(name: str) -> str:
    return "LSS" + label(name)


def call(name: str) -> str:
    return "LST" + label(name)


def jump(name: str) -> str:
    return "LSL" + label(name)


def jz(name: str) -> str:
    return "LTS" + label(name)


def jn(name: str) -> str:
    return "LTT" + label(name)


DUP = "SLS"
SWAP = "SLT"
DISCARD = "SLL"
ADD = "TSSS"
SUB = "TSST"
MUL = "TSSL"
DIV = "TSTS"
MOD = "TSTT"
STORE = "TTS"
RETRIEVE = "TTT"
RET = "LTL"
EXIT = "LLL"
OUTC = "TLSS"
OUTN = "TLST"
READC = "TLTS"
READN = "TLTT"


def prog(*parts: str) -> str:
    # Blanks between instructions are comments in the STL encoding.
    return " ".join(parts)


def to_whitespace(stl: str) -> str:
    return stl.replace(" ", "").translate(str.maketrans({"S": " ", "T": "\t", "L": "\n"}))
