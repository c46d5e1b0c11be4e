"""
latex_normalizer.py

Best-effort inline-math delimiting for extracted question text.
- Converts Unicode Greek letters, math symbols and math alphanumerics to LaTeX
- Wraps bare LaTeX commands (\\frac{a}{b}, \\vec{F}_{net}) in $...$
- Wraps reaction-mechanism labels (SN1, E2) and chemical formulas (CO2, H2SO4)
  as $\\text{CO}_{2}$

This is text munging, not a LaTeX parser. Known misfires: element-symbol words
with digits that are not formulas (e.g. "B12", "C4") get wrapped, and formulas
written with lowercase letters or charges (e.g. "so4", "Fe3+") are left alone.
The transform is idempotent and never touches text already inside $...$,
$$...$$, \\(...\\) or \\[...\\].
"""
import re
import unicodedata
from typing import Optional, Tuple

# Common math symbols and their LaTeX equivalents
UNICODE_TO_LATEX = {
    '∑': r'\sum',
    '∞': r'\infty',
    '→': r'\to',
    '←': r'\leftarrow',
    '⇌': r'\rightleftharpoons',
    '±': r'\pm',
    '×': r'\times',
    '÷': r'\div',
    '≠': r'\neq',
    '≤': r'\leq',
    '≥': r'\geq',
    '≈': r'\approx',
    '∝': r'\propto',
    '∫': r'\int',
    '∂': r'\partial',
    '∈': r'\in',
    '∗': r'\ast',
    '⋅': r'\cdot',
    '⋆': r'\star',
    '∆': r'\Delta',
    '∇': r'\nabla',
}

# Greek letters (partial)
GREEK_TO_LATEX = {
    'α': r'\alpha', 'β': r'\beta', 'γ': r'\gamma', 'δ': r'\delta', 'ε': r'\epsilon',
    'η': r'\eta', 'θ': r'\theta', 'κ': r'\kappa', 'λ': r'\lambda', 'μ': r'\mu',
    'ν': r'\nu', 'ξ': r'\xi', 'π': r'\pi', 'ρ': r'\rho', 'σ': r'\sigma', 'τ': r'\tau',
    'φ': r'\phi', 'χ': r'\chi', 'ψ': r'\psi', 'ω': r'\omega',
    'Γ': r'\Gamma', 'Δ': r'\Delta', 'Θ': r'\Theta', 'Λ': r'\Lambda', 'Π': r'\Pi',
    'Σ': r'\Sigma', 'Φ': r'\Phi', 'Ψ': r'\Psi', 'Ω': r'\Omega',
}

SUBSCRIPT_DIGITS = str.maketrans('₀₁₂₃₄₅₆₇₈₉', '0123456789')

SYMBOL_TO_LATEX = {**UNICODE_TO_LATEX, **GREEK_TO_LATEX}
SYMBOL_RE = re.compile('|'.join(re.escape(symbol) for symbol in SYMBOL_TO_LATEX))
# Mathematical Alphanumeric Symbols block (italic/bold/script letters and digits)
MATH_ALPHANUMERIC_RE = re.compile('[\U0001D400-\U0001D7FF]')

# Existing math: $$...$$, $...$, \(...\), \[...\]
MATH_SPAN_RE = re.compile(r'\$\$.+?\$\$|\$[^$]+\$|\\\(.+?\\\)|\\\[.+?\\\]', re.DOTALL)

COMMAND_NAME_RE = re.compile(r'\\([A-Za-z]+)')
# \n is also the literal newline escape models emit; only these n-commands count as LaTeX
N_COMMANDS = {
    'nabla', 'ne', 'neq', 'neg', 'nu', 'not', 'ni', 'notin', 'nleq', 'ngeq', 'nmid',
    'nearrow', 'nwarrow', 'nexists', 'newline',
}

REACTION_LABEL_RE = re.compile(r'(SN|SE|E)([12])(?![A-Za-z0-9])')
FORMULA_RE = re.compile(r'(?:[A-Z][a-z]?\d*)+(?![A-Za-z0-9])')
FORMULA_PART_RE = re.compile(r'([A-Z][a-z]?)(\d*)')

ELEMENTS = {
    'H', 'He', 'Li', 'Be', 'B', 'C', 'N', 'O', 'F', 'Ne', 'Na', 'Mg', 'Al', 'Si', 'P', 'S',
    'Cl', 'Ar', 'K', 'Ca', 'Sc', 'Ti', 'V', 'Cr', 'Mn', 'Fe', 'Co', 'Ni', 'Cu', 'Zn', 'Ga',
    'Ge', 'As', 'Se', 'Br', 'Kr', 'Rb', 'Sr', 'Y', 'Zr', 'Nb', 'Mo', 'Tc', 'Ru', 'Rh', 'Pd',
    'Ag', 'Cd', 'In', 'Sn', 'Sb', 'Te', 'I', 'Xe', 'Cs', 'Ba', 'La', 'Ce', 'Pr', 'Nd', 'Pm',
    'Sm', 'Eu', 'Gd', 'Tb', 'Dy', 'Ho', 'Er', 'Tm', 'Yb', 'Lu', 'Hf', 'Ta', 'W', 'Re', 'Os',
    'Ir', 'Pt', 'Au', 'Hg', 'Tl', 'Pb', 'Bi', 'Po', 'At', 'Rn', 'Fr', 'Ra', 'Ac', 'Th', 'Pa',
    'U', 'Np', 'Pu', 'Am', 'Cm', 'Bk', 'Cf', 'Es', 'Fm', 'Md', 'No', 'Lr',
}


def unicode_to_latex(text: str) -> str:
    """Convert Unicode math symbols, Greek, subscript digits and math letters to LaTeX/ASCII."""
    text = MATH_ALPHANUMERIC_RE.sub(lambda m: unicodedata.normalize('NFKC', m.group()), text)
    text = text.translate(SUBSCRIPT_DIGITS)

    def replace(match: re.Match) -> str:
        command = SYMBOL_TO_LATEX[match.group()]
        following = text[match.end():match.end() + 1]
        # \alphax would read as one unknown command
        return command + ' ' if following.isalpha() else command

    return SYMBOL_RE.sub(replace, text)


def _consume_group(text: str, start: int, open_char: str, close_char: str) -> Optional[int]:
    """Index just past a balanced group starting at text[start] == open_char, or None."""
    if start >= len(text) or text[start] != open_char:
        return None
    depth = 0
    index = start
    while index < len(text):
        char = text[index]
        if char == '\\':
            # escaped character, e.g. \{ or \\
            index += 2
            continue
        if char == open_char:
            depth += 1
        elif char == close_char:
            depth -= 1
            if depth == 0:
                return index + 1
        index += 1
    return None


def _consume_command(text: str, start: int) -> Optional[int]:
    """
    Consume one or more adjacent commands with their arguments and sub/superscripts,
    e.g. \\frac{a}{b}, \\vec{F}_{net}, \\alpha\\beta, \\sqrt[3]{x}^2.
    """
    position = start
    consumed = False
    while position < len(text):
        name = COMMAND_NAME_RE.match(text, position)
        if not name:
            break
        if name.group(1)[0] == 'n' and name.group(1) not in N_COMMANDS:
            break
        position = name.end()
        consumed = True

        optional_end = _consume_group(text, position, '[', ']')
        if optional_end:
            position = optional_end
        while True:
            group_end = _consume_group(text, position, '{', '}')
            if not group_end:
                break
            position = group_end

        while position < len(text) and text[position] in '_^':
            group_end = _consume_group(text, position + 1, '{', '}')
            if group_end:
                position = group_end
            elif position + 1 < len(text) and text[position + 1].isalnum():
                position += 2
            else:
                break
    return position if consumed else None


def _render_formula(token: str) -> str:
    rendered = []
    letters = ''
    for symbol, digits in FORMULA_PART_RE.findall(token):
        letters += symbol
        if digits:
            rendered.append(f'\\text{{{letters}}}_{{{digits}}}')
            letters = ''
    if letters:
        rendered.append(f'\\text{{{letters}}}')
    return ''.join(rendered)


def _is_formula(token: str) -> bool:
    parts = FORMULA_PART_RE.findall(token)
    return (
        ''.join(symbol + digits for symbol, digits in parts) == token
        and any(digits for _, digits in parts)
        and all(symbol in ELEMENTS for symbol, _ in parts)
    )


def _match_at(segment: str, index: int) -> Optional[Tuple[int, str]]:
    """Return (end, latex) for a bare math expression starting at segment[index]."""
    char = segment[index]
    previous = segment[index - 1] if index > 0 else ''

    if char == '\\':
        end = _consume_command(segment, index)
        if end:
            return end, segment[index:end]
        return None

    after_newline_escape = segment[index - 2:index] == '\\n' if index >= 2 else False
    if not char.isupper() or previous == '\\' or (previous.isalnum() and not after_newline_escape):
        return None

    label = REACTION_LABEL_RE.match(segment, index)
    if label:
        return label.end(), f'\\text{{{label.group(1)}}}_{{{label.group(2)}}}'

    formula = FORMULA_RE.match(segment, index)
    if formula and _is_formula(formula.group()):
        return formula.end(), _render_formula(formula.group())
    return None


def _wrap_segment(segment: str, before: str, after: str) -> str:
    out = []
    index = 0
    while index < len(segment):
        match = _match_at(segment, index)
        if not match:
            out.append(segment[index])
            index += 1
            continue

        end, latex = match
        previous = segment[index - 1] if index > 0 else before
        following = segment[end] if end < len(segment) else after
        if previous == '$' or following == '$':
            out.append(segment[index:end])
        else:
            out.append(f'${latex}$')
        index = end
    return ''.join(out)


def normalize(text: Optional[str]) -> Optional[str]:
    """Wrap every bare LaTeX/chemistry expression in inline-math delimiters."""
    if not text:
        return text

    text = unicode_to_latex(text)
    parts = []
    last = 0
    for span in MATH_SPAN_RE.finditer(text):
        parts.append(_wrap_segment(text[last:span.start()], text[last - 1:last] if last else '', span.group()[0]))
        parts.append(span.group())
        last = span.end()
    parts.append(_wrap_segment(text[last:], text[last - 1:last] if last else '', ''))
    return ''.join(parts)
