"""Prompt templates for table repair: the initial diagnosis-aware prompt and the corrective retry prompt."""

from tablerepair.repair.analysis import Instruction, TableStructure
from tablerepair.repair.schema import RepairContext

# Context excerpts embedded in the prompt
TEXTO_ASSOCIADO_CHARS = 2000
ENUNCIADO_CHARS = 1000

# Characters of a rejected output echoed back in the retry prompt
REJECTED_OUTPUT_CHARS = 2000

# Generic header names listed in the diagnosis block
MAX_LISTED_HEADERS = 10

ROLE = (
    "ROLE: You are an **Educational Content Structuring Expert** specializing in creating "
    "high-quality study materials for Brazilian public exam preparation."
)

COMMON_RULES = """2. **LATEX REPAIR**: Merge split cells, add missing delimiters.
3. **PRESERVATION**: Keep original data, don't invent.
4. **PORTUGUESE ONLY**: All text in Brazilian Portuguese."""

OUTPUT_RULE = "OUTPUT: Return ONLY <table> HTML. No markdown. No explanations."


def _structural_instruction(variant: Instruction, structure: TableStructure, target_cols: int) -> str:
    if variant is Instruction.ADAPTIVE:
        return (
            "1. **KEY-VALUE & LOGICAL SPLITTING (MANDATORY)**\n"
            "   - Analyze the content and split merged content into separate columns."
        )
    if variant is Instruction.COMPARATIVE:
        return (
            "1. **COMPARATIVE TABLE STRUCTURE (MANDATORY)**\n"
            "   - REQUIRED FORMAT: 3+ columns → [Aspecto/Critério] | [Opção A] | [Opção B]"
        )
    if variant is Instruction.HEADER_COLSPAN:
        return (
            "1. **FIX HEADER COLSPAN (CRITICAL)**\n"
            f"   - Table body has {target_cols} columns, header only has {structure.header_cols}.\n"
            "   - Add colspan to grouped headers."
        )
    if variant is Instruction.MASS_GHOST:
        return (
            "1. **GHOST COLUMN DELETION (MANDATORY)**\n"
            '   - DELETE all <th> with "Coluna N" headers\n'
            f"   - Keep ONLY the first {target_cols} columns with real data"
        )
    if variant is Instruction.MINOR_GHOST:
        return f"1. **GHOST COLUMN REMOVAL**\n   - Remove {structure.ghost_cols} empty column(s)."
    return "1. **STRUCTURAL REPAIR**\n   - Fix alignment issues."


def _diagnosis_block(structure: TableStructure) -> str:
    """Structural error summary, present only when ghost columns or a broken header row were found."""
    lines: list[str] = []
    if structure.has_ghost_columns:
        lines += [
            f"Header columns: {structure.header_cols}",
            f"Columns with actual data: {structure.real_cols}",
            f"GHOST COLUMNS: {structure.ghost_cols}",
        ]
        if structure.generic_headers:
            listed = ", ".join(structure.generic_headers[:MAX_LISTED_HEADERS])
            more = "..." if len(structure.generic_headers) > MAX_LISTED_HEADERS else ""
            lines.append(f"PLACEHOLDER HEADERS TO DELETE: {listed}{more}")
    if structure.header_health.broken:
        lines.append(f"HEADER ROW BROKEN: {structure.header_health.reason}")
    if not lines:
        return ""
    return "--- STRUCTURAL ERROR DETECTED ---\n" + "\n".join(lines) + "\n---------------------------------"


def _context_block(context: RepairContext) -> str:
    subject = [f"Matéria: {context.materia or 'Geral'}"]
    if context.assunto:
        subject.append(f"Assunto: {context.assunto}")
    if context.topico:
        subject.append(f"Tópico: {context.topico}")
    return "\n".join(
        [
            "--- CONTEXT ---",
            *subject,
            (context.texto_associado or "")[:TEXTO_ASSOCIADO_CHARS],
            (context.enunciado or "")[:ENUNCIADO_CHARS],
            "---------------------------------------------------------",
        ]
    )


def build_repair_prompt(
    broken_html: str,
    structure: TableStructure,
    target_cols: int,
    variant: Instruction,
    context: RepairContext,
) -> str:
    """Build the first-attempt prompt: role, target, diagnosis, context, instruction, broken markup."""
    if variant is Instruction.ADAPTIVE:
        target = "TARGET: **Adaptive Columns** (Prefer 2 or 3 columns to organize the data logically)"
    else:
        target = f"TARGET: Final table must have **{target_cols} columns** (or more if semantics require it)."

    sections = [
        ROLE,
        "TASK: Fix the broken HTML table below.",
        target,
        _diagnosis_block(structure),
        _context_block(context),
        "INSTRUCTIONS:",
        _structural_instruction(variant, structure, target_cols),
        COMMON_RULES,
        f"BROKEN TABLE:\n{broken_html}",
        OUTPUT_RULE,
    ]
    return "\n\n".join(s for s in sections if s)


def build_retry_prompt(previous_output: str, errors: list[str], target_cols: int, original_html: str) -> str:
    """Build the corrective prompt sent after a rejected output."""
    columns = "adaptive" if target_cols <= 1 else str(target_cols)
    reasons = "\n".join(f"• {e}" for e in errors)
    return f"""❌ YOUR OUTPUT WAS REJECTED ❌

ERRORS FOUND:
{reasons}

RULES:
1. Output table MUST have {columns} columns.
2. SAME headers as original.
3. NO invented data.
4. Fix LaTeX syntax only.
5. Portuguese ONLY.

ORIGINAL TABLE:
{original_html}

YOUR REJECTED OUTPUT:
{previous_output[:REJECTED_OUTPUT_CHARS]}

OUTPUT: Return the FIXED <table> HTML. No markdown.
"""
