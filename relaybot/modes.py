"""Domain modes: the closed set of personas a prompt can be run under."""

from enum import Enum
from typing import Optional

_NO_TABLES = "Format responses cleanly without markdown tables - use bullet points instead."

FINANCE_PROMPT = f"""You are a quantitative financial analyst and economist with deep expertise in:
- Technical analysis, chart patterns, and trading indicators
- Fundamental analysis and company valuation
- Macroeconomics, monetary policy, and fiscal policy
- Portfolio theory, risk management, and optimization
- Derivatives, options pricing, and hedging strategies
- Statistical modeling and quantitative methods

Be precise with numbers and cite data sources when possible.
{_NO_TABLES}"""

DEV_PROMPT = f"""You are a senior full-stack developer with expertise in:
- Frontend: React, Vue, Next.js, TypeScript, Tailwind CSS
- Backend: Node.js, Python, Go, REST APIs, GraphQL
- Databases: PostgreSQL, MongoDB, Redis
- DevOps: Docker, CI/CD, cloud hosting
- AI/ML: LLM APIs, embeddings, RAG

Write clean, production-ready code. Explain architectural decisions.
Format code blocks properly. {_NO_TABLES}"""

LEGAL_PROMPT = f"""You are a legal technology expert. Your expertise includes:
- Judicial behavior analysis and court data analytics
- Court record APIs and legal data normalization
- Legal tech SaaS architecture and pricing
- Securities compliance (private placements, investor verification)
- Contract and subscription agreement review

Format responses professionally. Cite legal sources when applicable.
{_NO_TABLES}"""

HEALTH_PROMPT = f"""You are a healthcare technology expert specializing in emergency medical services.
Your expertise includes:
- Prehospital care protocols and paramedic decision support
- Weight-based dosing calculations
- Medical knowledge base design and retrieval
- Offline-first apps for field use
- Medical data privacy and compliance

Be precise with medical information. Always emphasize following local protocols.
{_NO_TABLES}"""

JUDGE_PROMPT = f"""You are an expert in judicial analytics and court transparency.
Key capabilities:
- Search and summarize judge profiles
- Analyze judicial behavior patterns and case outcomes
- Civil, criminal, and family law metrics
- Court and jurisdiction data lookup

Help users understand judicial patterns and analyze court data.
{_NO_TABLES}"""

DEFAULT_PROMPT = (
    "Format responses cleanly for a chat window. Avoid markdown tables - use bullet "
    "points or plain text instead. Keep responses focused and well-structured."
)


class Mode(Enum):
    """A domain mode. DEFAULT has no command word; the rest are `/<value> <query>`."""

    DEFAULT = "default"
    FINANCE = "finance"
    DEV = "dev"
    LEGAL = "legal"
    HEALTH = "health"
    JUDGE = "judge"

    @classmethod
    def from_name(cls, name: str) -> Optional["Mode"]:
        """Match a command word (without slash) to a mode, or None."""
        for mode in cls:
            if mode.value == name:
                return mode
        return None

    @classmethod
    def commands(cls) -> list["Mode"]:
        """Modes selectable with a slash command."""
        return [m for m in cls if m is not cls.DEFAULT]

    @property
    def label(self) -> str:
        if self is Mode.FINANCE:
            return "Financial Analysis"
        if self is Mode.DEV:
            return "Dev Mode"
        if self is Mode.LEGAL:
            return "Legal Tech"
        if self is Mode.HEALTH:
            return "Healthcare/EMS"
        if self is Mode.JUDGE:
            return "Judicial Analytics"
        return "Processing"

    @property
    def system_prompt(self) -> str:
        if self is Mode.FINANCE:
            return FINANCE_PROMPT
        if self is Mode.DEV:
            return DEV_PROMPT
        if self is Mode.LEGAL:
            return LEGAL_PROMPT
        if self is Mode.HEALTH:
            return HEALTH_PROMPT
        if self is Mode.JUDGE:
            return JUDGE_PROMPT
        return DEFAULT_PROMPT

    @property
    def description(self) -> str:
        if self is Mode.FINANCE:
            return "Quant/market analysis"
        if self is Mode.DEV:
            return "Full-stack development"
        if self is Mode.LEGAL:
            return "Legal tech, compliance"
        if self is Mode.HEALTH:
            return "EMS/healthcare"
        if self is Mode.JUDGE:
            return "Judicial analytics"
        return "General assistant"

    @property
    def usage(self) -> str:
        return f"Usage: /{self.value} [query]\n{self.description}."

    def compose(self, query: str) -> str:
        """Prepend this mode's system prompt to a user query."""
        return f"{self.system_prompt}\n\n---\n\nUser request: {query}"

    def compose_agent(self, base: str, index: int, total: int) -> str:
        """Prompt variant for agent `index` (1-based) of a fan-out batch."""
        return (
            f"{self.system_prompt}\n\n"
            f"Agent {index} task: {base} (Focus area {index} of {total})"
        )
