"""Compiled regex patterns and constant tuples for exam-table auditing.

The taxonomy targets Portuguese-language exam material: layout-trap boxes
("Armadilha #N"), LaTeX fragments split across cells, AI placeholder text and
financial statements whose blank cells are legitimate.
"""

import re

# ─── Fields ──────────────────────────────────────────────────────────────────

# Free-text question fields that may embed HTML tables
FIELDS_TO_AUDIT = ("enunciado", "resolucao", "resolucao_aprofundada", "texto_associado")


# ─── Table-Level Patterns ────────────────────────────────────────────────────

# Decorative boxes and classification banners wrongly wrapped in a table
CONTENT_SWALLOW_RE = re.compile(
    r"Armadilha\s*#\d+|Estratégia\s*#\d+|Critérios para Classificação de Sigilo|mnemonica-box",
    re.IGNORECASE,
)

# Markdown separator row such as "| --- |"
MARKDOWN_SEPARATOR_RE = re.compile(r"\|\s*-{3,}")

# A whole markdown table (header row followed by a separator row) inside a field
MARKDOWN_TABLE_RE = re.compile(r"(^\s*\|.+\|\s*$)\s*\n\s*\|(?:[ \t:-]+\|)+\s*$", re.MULTILINE)

# Any opening table tag
TABLE_TAG_RE = re.compile(r"<table", re.IGNORECASE)


# ─── Cell-Level Patterns ─────────────────────────────────────────────────────

# Isolated LaTeX delimiter or single-letter subscript ("$", "x_1", "V_{2}")
SPLIT_CELL_RE = re.compile(r"^(\s*\$\s*|\s*[A-Za-z]_\{?\d+\}?\s*)$")

# A lone comparison/arithmetic symbol
SPLIT_OPERATOR_RE = re.compile(r"^[\s]*[><=+*/][\s]*$")

# Bracketed hedging text left behind by a model
AI_LAZY_RE = re.compile(
    r"\[.*(incompleta|fórmula|formula|missing|erro|check|todo|inserir|preencher).*\]",
    re.IGNORECASE,
)

# Malformed entity: "&name", "&#123" or "&#x1F" without the closing semicolon
BROKEN_ENTITY_RE = re.compile(r"&[a-zA-Z]+(?![a-zA-Z;])|&#(?:[xX][0-9a-fA-F]*(?![0-9a-fA-F;])|\d*(?![0-9;xX]))")

# Escaped markup leaking into an inline style value
BROKEN_STYLE_VALUE_RE = re.compile(r"style\s*=\s*[\"'][^\"']*&[lg]t;", re.IGNORECASE)

# Style declaration with no value: "color: ;" or trailing "color:"
BROKEN_STYLE_DECL_RE = re.compile(r":\s*;|:\s*$")

# Trailing ellipsis
TRUNCATED_RE = re.compile(r"\.{3,}$|…$")

# Header text made only of dashes, pipes and whitespace
PLACEHOLDER_HEADER_RE = re.compile(r"^[\s|—–-]+$")


# ─── LaTeX Patterns ──────────────────────────────────────────────────────────

# Any backslash command, used to decide whether the LaTeX check applies
LATEX_COMMAND_RE = re.compile(r"\\[a-zA-Z]")

# Currency prefixes that legitimately contain a dollar sign ("R$ 10,00", "US$5")
CURRENCY_PREFIX_RE = re.compile(r"^[RU]?\$\s*[\d.,]")
CURRENCY_REAL_RE = re.compile(r"R\$")

# Text opening with "$" followed by a command
LATEX_OPEN_COMMAND_RE = re.compile(r"^\$[^$]*\\[a-zA-Z]")

# Macros that must live inside math delimiters
LATEX_MACRO_RE = re.compile(r"\\(frac|sqrt|vec|sum|int|prod|alpha|beta|gamma|delta|sigma|omega|theta|phi|text)\{")

# Lone symbols that can only be debris of a split formula
LATEX_ORPHANS = ("{", "}", "$", "($", "$)")


# ─── Header Patterns ─────────────────────────────────────────────────────────

GENERIC_COLUMN_HEADER_RE = re.compile(r"^col(una|umn)?\s*\d+$", re.IGNORECASE)
GENERIC_NUMBERED_HEADER_RE = re.compile(r"^header\s*\d+$", re.IGNORECASE)
GENERIC_HEADER_LITERALS = ("", "-", "—", "|", ".")

# Header words that describe "miscellaneous" data rather than a real column
PLACEHOLDER_HEADER_WORDS = (
    "observações", "observacoes", "obs", "notas", "notes",
    "dados", "data", "info", "informações", "informacoes",
    "detalhes", "details", "outros", "other", "various",
)

# Header keywords marking accounting/financial tables (blank cells are legitimate)
FINANCIAL_KEYWORDS = (
    "débito", "crédito", "saldo", "valor", "r$", "custo", "receita", "despesa",
    "total", "entradas", "saídas", "estoque", "lucro", "patrimônio",
)

# Comparative-table wording ("diferenças", "versus", "A x B")
COMPARATIVE_RE = re.compile(r"diferenças?|compar|versus|vs\.?|x\s", re.IGNORECASE)


# ─── Markup Constants ────────────────────────────────────────────────────────

# Elements that give a cell content even without text
MEDIA_TAGS = ("img", "svg", "canvas", "video", "audio", "iframe", "math")

# Row containers whose <tr> children belong to the enclosing table
ROW_GROUP_TAGS = ("thead", "tbody", "tfoot")
