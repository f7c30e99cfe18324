#!/usr/bin/env python3

import sys
from io import StringIO
from typing import *
from enum import Enum, auto
from dataclasses import dataclass

TACK_EXT = '.tack'
COMMENT_WORD = 'rem'

# Same set as Rust's `char::is_ascii_whitespace`. Vertical tab is not in it.
ASCII_WHITESPACE = ' \t\n\x0c\r'
ASCII_DIGITS = '0123456789'

INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1

Loc=Tuple[str, int, int]
BlockId=int

class TokenKind(Enum):
    INT=auto()
    ADD=auto()
    SUB=auto()
    MUL=auto()
    DIV=auto()
    DUP=auto()
    DROP=auto()
    SWAP=auto()
    ROT=auto()
    OVER=auto()
    EQ=auto()
    GT=auto()
    LT=auto()
    DUMP=auto()
    ASCIIDUMP=auto()
    IF=auto()
    ELSE=auto()
    WHILE=auto()
    DO=auto()
    END=auto()

class BlockKind(Enum):
    IF=auto()
    ELSE=auto()
    WHILE=auto()
    DO=auto()

@dataclass(frozen=True)
class Word:
    text: str
    loc: Loc

@dataclass
class Token:
    kind: TokenKind
    word: Word
    block: Optional[BlockId] = None
    value: Optional[int] = None

Program=List[Token]

@dataclass
class OpenBlock:
    kind: BlockKind
    block: BlockId
    token: Token

assert len(TokenKind) == 20, "Exhaustive KEYWORD_NAMES definition"
KEYWORD_NAMES = {
    '+': TokenKind.ADD,
    '-': TokenKind.SUB,
    '*': TokenKind.MUL,
    '/': TokenKind.DIV,
    '=': TokenKind.EQ,
    '<': TokenKind.LT,
    '>': TokenKind.GT,
    'dup': TokenKind.DUP,
    'drop': TokenKind.DROP,
    'swp': TokenKind.SWAP,
    'rot': TokenKind.ROT,
    'over': TokenKind.OVER,
    'dump': TokenKind.DUMP,
    'asciidump': TokenKind.ASCIIDUMP,
    'if': TokenKind.IF,
    'else': TokenKind.ELSE,
    'while': TokenKind.WHILE,
    'do': TokenKind.DO,
    'end': TokenKind.END,
}

BOOL_NAMES = {
    'true': 1,
    'false': 0,
}

class CompilerError(Exception):
    '''Base of every error that aborts a compilation.

    `loc` is None only when the failure has no source position (e.g. the file
    could not be read at all). `notes` are extra positioned remarks printed
    after the error itself.
    '''
    def __init__(self, loc: Optional[Loc], message: str, notes: Optional[List[Tuple[Loc, str]]] = None):
        super().__init__(message)
        self.loc = loc
        self.message = message
        self.notes = notes or []

class InvalidToken(CompilerError):
    pass

class UnexpectedDo(CompilerError):
    pass

class UnexpectedEnd(CompilerError):
    pass

class UnmatchedElse(CompilerError):
    pass

class UnterminatedBlock(CompilerError):
    pass

class SourceReadFailure(CompilerError):
    pass

class SimulationError(CompilerError):
    pass

def compiler_diagnostic(loc: Loc, tag: str, message: str):
    print("%s:%d:%d: %s: %s" % (loc + (tag, message)), file=sys.stderr)

def compiler_error(loc: Loc, message: str):
    compiler_diagnostic(loc, 'ERROR', message)

def compiler_note(loc: Loc, message: str):
    compiler_diagnostic(loc, 'NOTE', message)

def report_error(error: CompilerError):
    if error.loc is not None:
        compiler_error(error.loc, error.message)
    else:
        print("[ERROR] %s" % error.message, file=sys.stderr)
    for loc, message in error.notes:
        compiler_note(loc, message)

def find_col(line: str, start: int, predicate: Callable[[str], bool]) -> int:
    while start < len(line) and not predicate(line[start]):
        start += 1
    return start

def lex_lines(file_path: str, text: str) -> Generator[Word, None, None]:
    for row, line in enumerate(text.split('\n')):
        col = find_col(line, 0, lambda x: x not in ASCII_WHITESPACE)
        while col < len(line):
            col_end = find_col(line, col, lambda x: x in ASCII_WHITESPACE)
            yield Word(line[col:col_end], (file_path, row + 1, col))
            col = find_col(line, col_end, lambda x: x not in ASCII_WHITESPACE)

def lex_text(file_path: str, text: str) -> List[Word]:
    return list(lex_lines(file_path, text))

def parse_int(text: str) -> Optional[int]:
    '''Parse a signed decimal literal made of ASCII digits only.

    Python's int() is more permissive than the language (it accepts `1_000`,
    surrounding whitespace and non-ASCII digits), so the shape is checked
    first.
    '''
    digits = text[1:] if text[:1] in ('+', '-') else text
    if len(digits) == 0 or any(c not in ASCII_DIGITS for c in digits):
        return None
    return int(text)

def classify_word(word: Word) -> Token:
    value = parse_int(word.text)
    if value is not None:
        if not INT64_MIN <= value <= INT64_MAX:
            raise InvalidToken(word.loc, "integer literal `%s` does not fit in 64 bits" % word.text)
        return Token(TokenKind.INT, word, value=value)
    if word.text in BOOL_NAMES:
        return Token(TokenKind.INT, word, value=BOOL_NAMES[word.text])
    if word.text in KEYWORD_NAMES:
        return Token(KEYWORD_NAMES[word.text], word)
    raise InvalidToken(word.loc, "invalid token `%s`" % word.text)

def innermost_block_note(stack: List[OpenBlock]) -> List[Tuple[Loc, str]]:
    if len(stack) == 0:
        return []
    top = stack[-1]
    return [(top.token.word.loc, "the innermost open block `%s` starts here" % top.token.word.text)]

def parse_words(words: Iterable[Word]) -> Program:
    program: Program = []
    stack: List[OpenBlock] = []
    block_count: BlockId = 0
    prev_row: Optional[int] = None
    commenting = False
    for word in words:
        _, row, _ = word.loc
        if row != prev_row:
            commenting = False
        prev_row = row
        if commenting:
            continue
        if word.text == COMMENT_WORD:
            commenting = True
            continue

        token = classify_word(word)
        assert len(TokenKind) == 20, "Exhaustive block handling in parse_words"
        if token.kind == TokenKind.IF or token.kind == TokenKind.WHILE:
            token.block = block_count
            block_count += 1
            kind = BlockKind.IF if token.kind == TokenKind.IF else BlockKind.WHILE
            stack.append(OpenBlock(kind, token.block, token))
        elif token.kind == TokenKind.DO:
            if len(stack) == 0 or stack[-1].kind != BlockKind.WHILE:
                raise UnexpectedDo(word.loc, "unexpected `do` without a matching `while`", innermost_block_note(stack))
            stack.pop()
            token.block = block_count
            block_count += 1
            stack.append(OpenBlock(BlockKind.DO, token.block, token))
        elif token.kind == TokenKind.ELSE:
            if len(stack) == 0 or stack[-1].kind != BlockKind.IF:
                raise UnmatchedElse(word.loc, "`else` can only be used in `if`-blocks", innermost_block_note(stack))
            token.block = stack[-1].block
            stack[-1] = OpenBlock(BlockKind.ELSE, token.block, stack[-1].token)
        elif token.kind == TokenKind.END:
            if len(stack) == 0:
                raise UnexpectedEnd(word.loc, "unexpected `end` without an open block")
            if stack[-1].kind == BlockKind.WHILE:
                raise UnexpectedEnd(word.loc, "`end` cannot close a `while` block before its `do`",
                                    [(stack[-1].token.word.loc, "the `while` block starts here")])
            token.block = stack.pop().block
        program.append(token)

    if len(stack) > 0:
        top = stack[-1]
        raise UnterminatedBlock(top.token.word.loc, "unterminated `%s` block" % top.token.word.text)

    return program

def read_source(file_path: str) -> str:
    try:
        with open(file_path, "r", encoding='utf-8') as f:
            return f.read()
    except OSError as e:
        raise SourceReadFailure(None, "could not read file `%s`: %s" % (file_path, e.strerror)) from e
    except UnicodeDecodeError as e:
        raise SourceReadFailure(None, "could not read file `%s`: %s" % (file_path, e.reason)) from e

def compile_file_to_program(file_path: str) -> Program:
    return parse_words(lex_text(file_path, read_source(file_path)))

def generate_fasm_linux_x86_64(program: Program) -> str:
    out = StringIO()
    out.write("format ELF64 executable\n")
    out.write("entry start\n")
    out.write("segment readable executable\n")
    # print_decimal: print rdi as a signed decimal followed by a newline
    out.write("print_decimal:\n")
    out.write("    test    rdi, rdi\n")
    out.write("    jns     .unsigned\n")
    out.write("    push    rdi\n")
    out.write("    mov     rdi, 45\n")
    out.write("    call    print_char\n")
    out.write("    pop     rdi\n")
    out.write("    neg     rdi\n")
    out.write(".unsigned:\n")
    out.write("    mov     r9, 0xCCCCCCCCCCCCCCCD\n")
    out.write("    sub     rsp, 40\n")
    out.write("    mov     byte [rsp+31], 10\n")
    out.write("    lea     rcx, [rsp+30]\n")
    out.write(".digit:\n")
    out.write("    mov     rax, rdi\n")
    out.write("    lea     r8, [rsp+32]\n")
    out.write("    mul     r9\n")
    out.write("    mov     rax, rdi\n")
    out.write("    sub     r8, rcx\n")
    out.write("    shr     rdx, 3\n")
    out.write("    lea     rsi, [rdx+rdx*4]\n")
    out.write("    add     rsi, rsi\n")
    out.write("    sub     rax, rsi\n")
    out.write("    add     eax, 48\n")
    out.write("    mov     byte [rcx], al\n")
    out.write("    mov     rax, rdi\n")
    out.write("    mov     rdi, rdx\n")
    out.write("    mov     rdx, rcx\n")
    out.write("    sub     rcx, 1\n")
    out.write("    cmp     rax, 9\n")
    out.write("    ja      .digit\n")
    out.write("    lea     rax, [rsp+32]\n")
    out.write("    mov     edi, 1\n")
    out.write("    sub     rdx, rax\n")
    out.write("    lea     rsi, [rsp+32+rdx]\n")
    out.write("    mov     rdx, r8\n")
    out.write("    mov     rax, 1\n")
    out.write("    syscall\n")
    out.write("    add     rsp, 40\n")
    out.write("    ret\n")
    # print_char: write the low byte of rdi as a single raw character
    out.write("print_char:\n")
    out.write("    push    rdi\n")
    out.write("    mov     rax, 1\n")
    out.write("    mov     rdi, 1\n")
    out.write("    mov     rsi, rsp\n")
    out.write("    mov     rdx, 1\n")
    out.write("    syscall\n")
    out.write("    add     rsp, 8\n")
    out.write("    ret\n")
    out.write("start:\n")
    # rbp marks the bottom of the operand stack for the exit sequence
    out.write("    mov rbp, rsp\n")

    stack: List[Tuple[BlockKind, BlockId]] = []
    loop_tops: Dict[BlockId, BlockId] = {}
    for token in program:
        assert len(TokenKind) == 20, "Exhaustive token handling in generate_fasm_linux_x86_64"
        if token.kind == TokenKind.INT:
            assert isinstance(token.value, int), "This could be a bug in the parsing step"
            out.write("    ;; -- push int %d --\n" % token.value)
            out.write("    mov rax, %d\n" % token.value)
            out.write("    push rax\n")
        elif token.kind == TokenKind.ADD:
            out.write("    ;; -- add --\n")
            out.write("    pop rax\n")
            out.write("    pop rbx\n")
            out.write("    add rax, rbx\n")
            out.write("    push rax\n")
        elif token.kind == TokenKind.SUB:
            out.write("    ;; -- sub --\n")
            out.write("    pop rax\n")
            out.write("    pop rbx\n")
            out.write("    sub rbx, rax\n")
            out.write("    push rbx\n")
        elif token.kind == TokenKind.MUL:
            out.write("    ;; -- mul --\n")
            out.write("    pop rax\n")
            out.write("    pop rbx\n")
            out.write("    imul rax, rbx\n")
            out.write("    push rax\n")
        elif token.kind == TokenKind.DIV:
            out.write("    ;; -- div --\n")
            out.write("    pop rbx\n")
            out.write("    pop rax\n")
            out.write("    cqo\n")
            out.write("    idiv rbx\n")
            out.write("    push rax\n")
        elif token.kind == TokenKind.EQ:
            out.write("    ;; -- equal --\n")
            out.write("    mov rcx, 0\n")
            out.write("    mov rdx, 1\n")
            out.write("    pop rax\n")
            out.write("    pop rbx\n")
            out.write("    cmp rax, rbx\n")
            out.write("    cmove rcx, rdx\n")
            out.write("    push rcx\n")
        elif token.kind == TokenKind.GT:
            out.write("    ;; -- greater --\n")
            out.write("    mov rcx, 0\n")
            out.write("    mov rdx, 1\n")
            out.write("    pop rbx\n")
            out.write("    pop rax\n")
            out.write("    cmp rax, rbx\n")
            out.write("    cmovg rcx, rdx\n")
            out.write("    push rcx\n")
        elif token.kind == TokenKind.LT:
            out.write("    ;; -- less --\n")
            out.write("    mov rcx, 0\n")
            out.write("    mov rdx, 1\n")
            out.write("    pop rbx\n")
            out.write("    pop rax\n")
            out.write("    cmp rax, rbx\n")
            out.write("    cmovl rcx, rdx\n")
            out.write("    push rcx\n")
        elif token.kind == TokenKind.DUP:
            out.write("    ;; -- dup --\n")
            out.write("    pop rax\n")
            out.write("    push rax\n")
            out.write("    push rax\n")
        elif token.kind == TokenKind.DROP:
            out.write("    ;; -- drop --\n")
            out.write("    pop rax\n")
        elif token.kind == TokenKind.SWAP:
            out.write("    ;; -- swap --\n")
            out.write("    pop rax\n")
            out.write("    pop rbx\n")
            out.write("    push rax\n")
            out.write("    push rbx\n")
        elif token.kind == TokenKind.ROT:
            out.write("    ;; -- rot --\n")
            out.write("    pop rax\n")
            out.write("    pop rbx\n")
            out.write("    pop rcx\n")
            out.write("    push rbx\n")
            out.write("    push rax\n")
            out.write("    push rcx\n")
        elif token.kind == TokenKind.OVER:
            out.write("    ;; -- over --\n")
            out.write("    pop rax\n")
            out.write("    pop rbx\n")
            out.write("    push rbx\n")
            out.write("    push rax\n")
            out.write("    push rbx\n")
        elif token.kind == TokenKind.DUMP:
            out.write("    ;; -- dump --\n")
            out.write("    pop rdi\n")
            out.write("    call print_decimal\n")
        elif token.kind == TokenKind.ASCIIDUMP:
            out.write("    ;; -- asciidump --\n")
            out.write("    pop rdi\n")
            out.write("    call print_char\n")
        elif token.kind == TokenKind.IF:
            assert token.block is not None, "This could be a bug in the parsing step"
            stack.append((BlockKind.IF, token.block))
            out.write("    ;; -- if --\n")
            out.write("    pop rax\n")
            out.write("    test rax, rax\n")
            out.write("    jz end_if_%d\n" % token.block)
        elif token.kind == TokenKind.ELSE:
            assert len(stack) > 0 and stack[-1] == (BlockKind.IF, token.block), "This could be a bug in the parsing step"
            stack[-1] = (BlockKind.ELSE, token.block)
            out.write("    ;; -- else --\n")
            out.write("    jmp end_else_%d\n" % token.block)
            out.write("end_if_%d:\n" % token.block)
        elif token.kind == TokenKind.WHILE:
            assert token.block is not None, "This could be a bug in the parsing step"
            stack.append((BlockKind.WHILE, token.block))
            out.write("    ;; -- while --\n")
            out.write("loop_top_%d:\n" % token.block)
        elif token.kind == TokenKind.DO:
            assert token.block is not None, "This could be a bug in the parsing step"
            assert len(stack) > 0 and stack[-1][0] == BlockKind.WHILE, "This could be a bug in the parsing step"
            _, while_block = stack.pop()
            # `do` opens a block of its own; the back-edge still goes to the `while`
            loop_tops[token.block] = while_block
            stack.append((BlockKind.DO, token.block))
            out.write("    ;; -- do --\n")
            out.write("    pop rax\n")
            out.write("    test rax, rax\n")
            out.write("    jz end_while_%d\n" % token.block)
        elif token.kind == TokenKind.END:
            assert len(stack) > 0, "This could be a bug in the parsing step"
            kind, block = stack.pop()
            assert block == token.block, "This could be a bug in the parsing step"
            out.write("    ;; -- end --\n")
            if kind == BlockKind.IF:
                out.write("end_if_%d:\n" % block)
            elif kind == BlockKind.ELSE:
                out.write("end_else_%d:\n" % block)
            elif kind == BlockKind.DO:
                out.write("    jmp loop_top_%d\n" % loop_tops[block])
                out.write("end_while_%d:\n" % block)
            else:
                assert False, "This could be a bug in the parsing step"
        else:
            assert False, "unreachable"
    assert len(stack) == 0, "This could be a bug in the parsing step"

    out.write("    ;; -- exit --\n")
    out.write("    mov rax, 60\n")
    out.write("    xor rdi, rdi\n")
    out.write("    cmp rsp, rbp\n")
    out.write("    jae exit_process\n")
    out.write("    pop rdi\n")
    out.write("exit_process:\n")
    out.write("    syscall\n")
    return out.getvalue()

def wrap_int64(value: int) -> int:
    value &= (1 << 64) - 1
    if value > INT64_MAX:
        value -= 1 << 64
    return value

def cross_reference_blocks(program: Program) -> Dict[int, int]:
    '''Map the index of every jumping token to the index it jumps to.

    `if` and `do` jump when their condition is zero, `else` and the `end` of
    a loop jump unconditionally. The mapping is built from the block ids the
    parser assigned, with the same open-block discipline as the code
    generator.
    '''
    jumps: Dict[int, int] = {}
    stack: List[Tuple[BlockKind, int]] = []
    loop_tops: Dict[int, int] = {}
    for ip, token in enumerate(program):
        if token.kind == TokenKind.IF:
            stack.append((BlockKind.IF, ip))
        elif token.kind == TokenKind.WHILE:
            stack.append((BlockKind.WHILE, ip))
        elif token.kind == TokenKind.ELSE:
            kind, if_ip = stack.pop()
            assert kind == BlockKind.IF and program[if_ip].block == token.block, "This could be a bug in the parsing step"
            jumps[if_ip] = ip + 1
            stack.append((BlockKind.ELSE, ip))
        elif token.kind == TokenKind.DO:
            kind, while_ip = stack.pop()
            assert kind == BlockKind.WHILE, "This could be a bug in the parsing step"
            loop_tops[ip] = while_ip
            stack.append((BlockKind.DO, ip))
        elif token.kind == TokenKind.END:
            kind, block_ip = stack.pop()
            assert program[block_ip].block == token.block, "This could be a bug in the parsing step"
            jumps[block_ip] = ip + 1
            if kind == BlockKind.DO:
                jumps[ip] = loop_tops[block_ip]
    assert len(stack) == 0, "This could be a bug in the parsing step"
    return jumps

def simulate_program(program: Program, out: BinaryIO) -> int:
    '''Run the program in process and return its exit status.'''
    stack: List[int] = []
    jumps = cross_reference_blocks(program)

    def pop(token: Token) -> int:
        if len(stack) == 0:
            raise SimulationError(token.word.loc, "stack underflow in `%s`" % token.word.text)
        return stack.pop()

    ip = 0
    while ip < len(program):
        assert len(TokenKind) == 20, "Exhaustive token handling in simulate_program"
        token = program[ip]
        ip += 1
        if token.kind == TokenKind.INT:
            assert isinstance(token.value, int), "This could be a bug in the parsing step"
            stack.append(token.value)
        elif token.kind == TokenKind.ADD:
            b = pop(token)
            a = pop(token)
            stack.append(wrap_int64(a + b))
        elif token.kind == TokenKind.SUB:
            b = pop(token)
            a = pop(token)
            stack.append(wrap_int64(a - b))
        elif token.kind == TokenKind.MUL:
            b = pop(token)
            a = pop(token)
            stack.append(wrap_int64(a * b))
        elif token.kind == TokenKind.DIV:
            b = pop(token)
            a = pop(token)
            if b == 0:
                raise SimulationError(token.word.loc, "division by zero")
            if a == INT64_MIN and b == -1:
                raise SimulationError(token.word.loc, "integer overflow in division")
            quotient = abs(a) // abs(b)
            if (a < 0) != (b < 0):
                quotient = -quotient
            stack.append(wrap_int64(quotient))
        elif token.kind == TokenKind.EQ:
            b = pop(token)
            a = pop(token)
            stack.append(int(a == b))
        elif token.kind == TokenKind.GT:
            b = pop(token)
            a = pop(token)
            stack.append(int(a > b))
        elif token.kind == TokenKind.LT:
            b = pop(token)
            a = pop(token)
            stack.append(int(a < b))
        elif token.kind == TokenKind.DUP:
            a = pop(token)
            stack.append(a)
            stack.append(a)
        elif token.kind == TokenKind.DROP:
            pop(token)
        elif token.kind == TokenKind.SWAP:
            b = pop(token)
            a = pop(token)
            stack.append(b)
            stack.append(a)
        elif token.kind == TokenKind.ROT:
            c = pop(token)
            b = pop(token)
            a = pop(token)
            stack.append(b)
            stack.append(c)
            stack.append(a)
        elif token.kind == TokenKind.OVER:
            b = pop(token)
            a = pop(token)
            stack.append(a)
            stack.append(b)
            stack.append(a)
        elif token.kind == TokenKind.DUMP:
            out.write(b"%d\n" % pop(token))
        elif token.kind == TokenKind.ASCIIDUMP:
            out.write(bytes([pop(token) & 0xFF]))
        elif token.kind == TokenKind.IF or token.kind == TokenKind.DO:
            if pop(token) == 0:
                ip = jumps[ip - 1]
        elif token.kind == TokenKind.ELSE:
            ip = jumps[ip - 1]
        elif token.kind == TokenKind.END:
            if ip - 1 in jumps:
                ip = jumps[ip - 1]
        elif token.kind == TokenKind.WHILE:
            pass
        else:
            assert False, "unreachable"
    out.flush()

    if len(stack) == 0:
        return 0
    return stack[-1] & 0xFF

def usage(compiler_name: str):
    print("Usage: %s <file>" % compiler_name)
    print("  Compile the program in <file> and print the fasm assembly")
    print("  for x86_64 Linux to stdout.")
    print("  OPTIONS:")
    print("    -h, --help    Print this help to stdout and exit with 0 code")

def main():
    argv = sys.argv
    assert len(argv) >= 1
    compiler_name, *argv = argv

    if len(argv) < 1:
        usage(compiler_name)
        print("[ERROR] no input file is provided", file=sys.stderr)
        sys.exit(1)
    if argv[0] in ('-h', '--help'):
        usage(compiler_name)
        sys.exit(0)
    if len(argv) > 1:
        usage(compiler_name)
        print("[ERROR] expected exactly one input file but got %d arguments" % len(argv), file=sys.stderr)
        sys.exit(1)
    program_path, = argv

    try:
        program = compile_file_to_program(program_path)
        document = generate_fasm_linux_x86_64(program)
    except CompilerError as e:
        report_error(e)
        sys.exit(1)
    sys.stdout.write(document)

if __name__ == '__main__':
    main()
