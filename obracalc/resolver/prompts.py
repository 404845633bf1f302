"""Prompts for the line item resolver."""

TRIAGE_PROMPT = """You are the lead budget architect for a Spanish renovation company.
Decide how to price the following task.

Task: "{task}"
{context}
Routes:
- catalog: for MOST construction tasks, including specific materials and brands
  (e.g. "Keraben tiles", "PVC windows", "Rockwool insulation"). These are looked up in the
  reference price book.
- bespoke: ONLY for extremely custom, artistic or artisanal work where no standard price
  exists (e.g. "hand-painted mural", "antique gold leaf restoration", "custom sculpture").

Return JSON with:
- route: "catalog" or "bespoke"
- query: a short price book search query in Spanish for this task (technical wording)
- reasoning: one sentence
"""

DECOMPOSITION_PROMPT = """Break the following construction task into its constituent work items
so each can be priced from a standard Spanish price book.

Task: "{task}"
Total quantity: {quantity} {unit}
{context}
Rules:
- Return at most {max_items} components, in execution order
  (e.g. substrate preparation, then materials, then labour).
- Each component description must read like a price book entry (technical Spanish).
- Quantities must cover the TOTAL quantity above, in the component's own unit
  (m, m2, m3, u, h, kg).

Return JSON: {{"components": [{{"description": "...", "quantity": 1, "unit": "u"}}]}}
"""


def context_block(context: str | None) -> str:
    return f"Project context: {context}\n" if context else ""
