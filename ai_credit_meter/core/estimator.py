"""
Pre-call cost estimation.

Predicts the token count and credit cost of a chat request before it is
sent upstream. This is a heuristic, not a tokenizer: the prediction only
gates the request on the caller's balance. The actual charge is always
reconciled from upstream-reported usage when the provider reports it.

Estimation steps:
1. Input tokens = ceil(characters / 4) + system overhead
2. Output baseline from the complexity class
3. Output adjustments, in this order: long conversation, code, file uploads
4. Total = ceil((input + output) * context multiplier)
5. Cost = total priced through the PricingTable
"""

import math
import re
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Pattern, Sequence

from .errors import EstimationError
from .pricing import PricingTable
from .token_counter import approximate_tokens


class Complexity(Enum):
    """Complexity class of a request."""
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class Confidence(Enum):
    """How much the estimate can be trusted."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


SYSTEM_OVERHEAD_TOKENS = 50
CONTEXT_MULTIPLIER = Decimal("1.2")

OUTPUT_BASELINE = {
    Complexity.SIMPLE: 50,
    Complexity.MEDIUM: 150,
    Complexity.COMPLEX: 300,
}

LONG_CONVERSATION_TURNS = 5
LONG_CONVERSATION_FACTOR = Decimal("1.3")
CODE_REQUEST_FACTOR = Decimal("2.0")
FILE_UPLOAD_FACTOR = Decimal("1.5")

HIGH_CONFIDENCE_MAX_CHARS = 100

SIMPLE_PATTERNS = (
    re.compile(r"^.{1,20}$", re.DOTALL),
    re.compile(r"^\s*(yes|no|maybe|ok|okay|thanks|thank you|hi|hello|hey)\b", re.IGNORECASE),
    re.compile(r"^\s*(what|who|when|where)\b.*\bis\b", re.IGNORECASE | re.DOTALL),
)

COMPLEX_PATTERNS = (
    re.compile(r"write.*code|create.*function|implement", re.IGNORECASE | re.DOTALL),
    re.compile(r"explain.*detail|analy[sz]e.*deep|comprehensive", re.IGNORECASE | re.DOTALL),
    re.compile(r"step.*by.*step|tutorial|guide", re.IGNORECASE | re.DOTALL),
    re.compile(r"multiple.*options|compare.*contrast|pros.*cons", re.IGNORECASE | re.DOTALL),
)

CODE_PATTERNS = (
    re.compile(r"write.*code|create.*function|implement.*class", re.IGNORECASE | re.DOTALL),
    re.compile(r"\b(javascript|python|typescript|react|node|sql|rust|java)\b", re.IGNORECASE),
    re.compile(r"\b(function|class|method|algorithm)\b", re.IGNORECASE),
    re.compile(r"debug|fix.*code|error.*in.*code", re.IGNORECASE | re.DOTALL),
)


def _matches_any(patterns: Sequence[Pattern], text: str) -> bool:
    return any(pattern.search(text) for pattern in patterns)


class ComplexityClassifier:
    """Strategy interface for complexity classification.

    Subclass and override ``classify`` to plug in a real classifier.
    """

    def classify(self, text: str) -> Complexity:
        raise NotImplementedError


class HeuristicClassifier(ComplexityClassifier):
    """Regex based classifier. Simple rules win over complex ones."""

    def classify(self, text: str) -> Complexity:
        if _matches_any(SIMPLE_PATTERNS, text):
            return Complexity.SIMPLE
        if _matches_any(COMPLEX_PATTERNS, text):
            return Complexity.COMPLEX
        return Complexity.MEDIUM


def looks_like_code_request(text: str) -> bool:
    """True when the prompt appears to ask for code."""
    return _matches_any(CODE_PATTERNS, text)


@dataclass(frozen=True)
class EstimationContext:
    """Caller supplied context for an estimate.

    ``has_code_request`` of None means "detect from the prompt".
    """
    conversation_length: int = 1
    has_code_request: Optional[bool] = None
    has_file_uploads: bool = False


@dataclass(frozen=True)
class CostEstimate:
    """Predicted tokens and credits for one request."""
    model: str
    predicted_tokens: int
    predicted_cost: int
    confidence: Confidence
    complexity: Complexity


class CostEstimator:
    """Turns a prompt, model and context into a CostEstimate."""

    def __init__(self, pricing: PricingTable, classifier: Optional[ComplexityClassifier] = None):
        self.pricing = pricing
        self.classifier = classifier or HeuristicClassifier()

    def input_tokens(self, prompt: str) -> int:
        """Input token estimate including the fixed system overhead."""
        return approximate_tokens(prompt) + SYSTEM_OVERHEAD_TOKENS

    def output_tokens(
        self,
        complexity: Complexity,
        context: EstimationContext,
        code_request: bool
    ) -> int:
        """Adjusted output baseline, ceiled after all adjustments."""
        estimate = Decimal(OUTPUT_BASELINE[complexity])
        if context.conversation_length > LONG_CONVERSATION_TURNS:
            estimate *= LONG_CONVERSATION_FACTOR
        if code_request:
            estimate *= CODE_REQUEST_FACTOR
        if context.has_file_uploads:
            estimate *= FILE_UPLOAD_FACTOR
        return math.ceil(estimate)

    def estimate(
        self,
        prompt: str,
        model: str,
        context: Optional[EstimationContext] = None
    ) -> CostEstimate:
        """Estimate the cost of sending ``prompt`` to ``model``.

        Args:
            prompt: Request text
            model: Model identifier (unknown models use the default rate)
            context: Optional conversation context

        Returns:
            CostEstimate with predicted tokens, cost and confidence

        Raises:
            EstimationError: If the classifier fails
        """
        context = context or EstimationContext()
        try:
            complexity = self.classifier.classify(prompt)
        except Exception as e:
            raise EstimationError(f"Complexity classification failed: {e}") from e
        if context.has_code_request is None:
            code_request = looks_like_code_request(prompt)
        else:
            code_request = context.has_code_request

        total = math.ceil(
            (self.input_tokens(prompt) + self.output_tokens(complexity, context, code_request))
            * CONTEXT_MULTIPLIER
        )
        return CostEstimate(
            model=model,
            predicted_tokens=total,
            predicted_cost=self.pricing.calculate_cost(model, total),
            confidence=_confidence(prompt, complexity, code_request, context.has_file_uploads),
            complexity=complexity
        )


def _confidence(prompt: str, complexity: Complexity, code_request: bool, file_uploads: bool) -> Confidence:
    if complexity == Complexity.COMPLEX and (code_request or file_uploads):
        return Confidence.LOW
    if complexity == Complexity.SIMPLE and len(prompt) < HIGH_CONFIDENCE_MAX_CHARS:
        return Confidence.HIGH
    return Confidence.MEDIUM
