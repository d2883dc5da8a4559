"""
Conversation Analyzer for the Lead Engagement Engine.

Extracts vehicle interest, buying signals, lead temperature, conversation
stage and discovery questions from a transcript. Pure keyword/pattern
heuristics: the same transcript always produces the same analysis.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Pattern, Sequence, Tuple

logger = logging.getLogger(__name__)


class SignalType(Enum):
    """Buying signal families, in tie-break order."""
    HIGH_INTENT = "high_intent"
    READY_TO_BUY = "ready_to_buy"
    PRICE_SHOPPING = "price_shopping"
    OBJECTION = "objection"
    INFORMATION_SEEKING = "information_seeking"


class UrgencyTier(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ConversationStage(Enum):
    DISCOVERY = "discovery"
    PRESENTATION = "presentation"
    OBJECTION_HANDLING = "objection_handling"
    CLOSING = "closing"
    FOLLOW_UP = "follow_up"


class FeatureImportance(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class UseCase(Enum):
    WORK = "work"
    FAMILY = "family"
    PERSONAL = "personal"
    UNKNOWN = "unknown"


@dataclass
class TranscriptMessage:
    """One message of a conversation transcript."""
    direction: str  # in, out
    body: str
    sent_at: Optional[datetime] = None

    @property
    def is_inbound(self) -> bool:
        return self.direction == "in"


@dataclass
class VehicleFeature:
    name: str
    mention: str
    importance: FeatureImportance

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "mention": self.mention, "importance": self.importance.value}


@dataclass
class VehicleInterest:
    """Parsed vehicle interest."""
    make: Optional[str] = None
    model: Optional[str] = None
    year: Optional[int] = None
    features: List[VehicleFeature] = field(default_factory=list)
    use_case: UseCase = UseCase.UNKNOWN
    budget_mentions: List[str] = field(default_factory=list)
    timeline_mentions: List[str] = field(default_factory=list)
    confidence: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "make": self.make,
            "model": self.model,
            "year": self.year,
            "features": [f.to_dict() for f in self.features],
            "use_case": self.use_case.value,
            "budget_mentions": self.budget_mentions,
            "timeline_mentions": self.timeline_mentions,
            "confidence": self.confidence,
        }


@dataclass
class BuyingSignal:
    signal_type: SignalType
    strength: float  # 0-1
    urgency: UrgencyTier
    matches: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.signal_type.value,
            "strength": self.strength,
            "urgency": self.urgency.value,
            "matches": self.matches,
        }


@dataclass
class ConversationAnalysis:
    """Result of analyzing a conversation."""
    vehicle_interest: VehicleInterest
    buying_signals: List[BuyingSignal]
    temperature: int  # 0-100
    stage: ConversationStage
    discovery_questions: List[str] = field(default_factory=list)
    next_best_actions: List[str] = field(default_factory=list)
    urgent: bool = False
    budget_signal: bool = False
    temperature_breakdown: Dict[str, float] = field(default_factory=dict)

    def has_signal(self, signal_type: SignalType) -> bool:
        return any(s.signal_type == signal_type for s in self.buying_signals)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "vehicle_interest": self.vehicle_interest.to_dict(),
            "buying_signals": [s.to_dict() for s in self.buying_signals],
            "temperature": self.temperature,
            "stage": self.stage.value,
            "discovery_questions": self.discovery_questions,
            "next_best_actions": self.next_best_actions,
            "urgent": self.urgent,
            "budget_signal": self.budget_signal,
            "temperature_breakdown": self.temperature_breakdown,
        }


@dataclass(frozen=True)
class DiscoveryQuestion:
    topic: str
    question: str
    priority: int  # 1 = ask first
    asked_pattern: Pattern
    answered_pattern: Pattern


def _rx(pattern: str) -> Pattern:
    return re.compile(pattern, re.IGNORECASE)


class ConversationAnalyzer:
    """
    Analyzes a lead conversation.

    Temperature (0-100):
    - Base: 50
    - Each returned buying signal: +strength * 30
    - Vehicle interest confidence: +confidence * 20
    - Each feature mentioned: +5
    - Urgent keyword present: +15
    - Budget signal present: +10

    Stage (first match wins):
    closing > objection_handling > presentation > follow_up > discovery
    """

    BASE_TEMPERATURE = 50
    SIGNAL_WEIGHT = 30
    INTEREST_WEIGHT = 20
    FEATURE_BONUS = 5
    URGENCY_BONUS = 15
    BUDGET_BONUS = 10

    MAX_SIGNALS = 3
    MAX_QUESTIONS = 2
    MAX_ACTIONS = 4
    CLOSING_STRENGTH = 0.8

    # Known makes and their models; "chevy" is an alias
    MAKE_MODELS: Dict[str, List[str]] = {
        "chevrolet": [
            "silverado", "colorado", "equinox", "tahoe", "suburban", "traverse",
            "malibu", "blazer", "trailblazer", "trax", "camaro", "corvette", "bolt",
        ],
        "gmc": ["sierra", "canyon", "yukon", "acadia", "terrain"],
        "ford": ["f-150", "f150", "ranger", "maverick", "bronco", "explorer", "escape",
                 "expedition", "edge", "mustang"],
        "ram": ["1500", "2500", "3500", "promaster"],
        "toyota": ["tacoma", "tundra", "camry", "corolla", "rav4", "highlander", "4runner"],
        "honda": ["civic", "accord", "cr-v", "crv", "pilot", "odyssey", "ridgeline"],
        "nissan": ["altima", "sentra", "rogue", "frontier", "titan", "pathfinder"],
        "jeep": ["wrangler", "gladiator", "grand cherokee", "cherokee", "compass"],
        "hyundai": ["elantra", "sonata", "tucson", "santa fe", "palisade"],
        "kia": ["forte", "sportage", "sorento", "telluride"],
    }
    MAKE_ALIASES = {"chevy": "chevrolet"}

    FEATURE_PATTERNS: Dict[str, Pattern] = {
        "towing": _rx(r"\b(tow(?:ing)?|trailer|hitch|haul(?:ing)?)\b"),
        "drivetrain": _rx(r"\b(4x4|4wd|awd|all[- ]wheel drive|four[- ]wheel drive)\b"),
        "cab_style": _rx(r"\b(crew cab|double cab|regular cab|extended cab)\b"),
        "fuel_type": _rx(r"\b(diesel|hybrid|electric|ev|gas)\b"),
        "seating": _rx(r"\b(third row|3rd row|seats? (?:5|7|8)|seating)\b"),
        "technology": _rx(r"\b(carplay|android auto|navigation|sunroof|heated seats|remote start)\b"),
    }

    HIGH_IMPORTANCE_WORDS = ["need", "must", "require", "have to", "has to", "essential"]
    MEDIUM_IMPORTANCE_WORDS = ["want", "prefer", "would like", "looking for", "hoping for"]

    USE_CASE_KEYWORDS: Dict[UseCase, List[str]] = {
        UseCase.WORK: ["work", "job", "contractor", "business", "construction", "farm", "job site", "crew"],
        UseCase.FAMILY: ["family", "kids", "children", "wife", "husband", "car seat", "school"],
        UseCase.PERSONAL: ["commute", "myself", "daily driver", "weekend", "fun", "personal"],
    }

    BUDGET_KEYWORDS = [
        "budget", "price", "cost", "payment", "monthly", "finance", "financing",
        "interest rate", "apr", "down payment", "lease", "afford", "trade-in", "trade in", "$",
    ]
    TIMELINE_KEYWORDS = [
        "today", "tomorrow", "this week", "this weekend", "next week", "this month",
        "asap", "soon", "right away",
    ]
    URGENT_KEYWORDS = [
        "asap", "urgent", "today", "tonight", "right away", "immediately",
        "this week", "need it now", "as soon as possible",
    ]
    PRESENTATION_KEYWORDS = ["features", "specs", "specifications", "tell me about", "options", "towing capacity", "mpg"]
    FOLLOW_UP_KEYWORDS = ["think about", "get back to you", "call me later", "maybe later", "not right now"]

    SIGNAL_PATTERNS: Dict[SignalType, List[Tuple[Pattern, float]]] = {
        SignalType.HIGH_INTENT: [
            (_rx(r"\b(interested in|looking for|want(?:ing)? to (?:buy|get|purchase))\b"), 0.7),
            (_rx(r"\b(test drive|come (?:in|by)|stop by|swing by)\b"), 0.75),
            (_rx(r"\b(in stock|still available|do you still have)\b"), 0.6),
        ],
        SignalType.READY_TO_BUY: [
            (_rx(r"\b(ready to (?:buy|sign|purchase)|let'?s do (?:it|this)|i'?ll take it|where do i sign)\b"), 0.95),
            (_rx(r"\b(paperwork|sign today|put (?:a )?deposit|hold it for me)\b"), 0.85),
            (_rx(r"\b(pick (?:it|her|him) up|drive (?:it )?home)\b"), 0.8),
        ],
        SignalType.PRICE_SHOPPING: [
            (_rx(r"\b(best price|out the door|otd|lowest price|price match)\b"), 0.85),
            (_rx(r"\b(other dealers?|shopping around|comparing|better deal)\b"), 0.8),
            (_rx(r"\b(interest rate|apr|monthly payment|down payment|financ\w*|lease)\b"), 0.65),
            (_rx(r"\b(how much|price|cost|quote)\b"), 0.6),
        ],
        SignalType.OBJECTION: [
            (_rx(r"\b(too expensive|too much|can'?t afford|out of my budget)\b"), 0.85),
            (_rx(r"\b(think about it|need (?:more )?time|not ready)\b"), 0.7),
            (_rx(r"\b(not sure|concerned|worried|hesitant)\b"), 0.6),
        ],
        SignalType.INFORMATION_SEEKING: [
            (_rx(r"\b(tell me (?:more )?about|more info\w*|details)\b"), 0.6),
            (_rx(r"\b(specs?|features?|options?|mpg|towing capacity|warranty|colors?|trims?)\b"), 0.55),
            (_rx(r"\b(what(?:'s| is| are)|how (?:many|much|does)|does it|do you have)\b"), 0.5),
        ],
    }

    QUESTION_BANK: List[DiscoveryQuestion] = [
        DiscoveryQuestion(
            "timeline", "When are you hoping to be in your new vehicle?", 1,
            _rx(r"\b(when are you|timeline|timeframe|how soon)\b"),
            _rx(r"\b(today|tomorrow|this week|weekend|this month|next month|asap|soon)\b"),
        ),
        DiscoveryQuestion(
            "budget", "What monthly payment range would feel comfortable for you?", 1,
            _rx(r"\b(budget|monthly payment|price range|payment range)\b"),
            _rx(r"(\$\s?\d|\b(budget|payment|afford|interest rate|apr)\b)"),
        ),
        DiscoveryQuestion(
            "trade_in", "Will you be trading in a vehicle?", 2,
            _rx(r"\btrad(?:e|ing)[- ]?in\b"),
            _rx(r"\btrad(?:e|ing)[- ]?in\b"),
        ),
        DiscoveryQuestion(
            "use_case", "Will it mainly be for work, family or personal driving?", 2,
            _rx(r"\b(use it for|using it for|mainly be for|mainly for)\b"),
            _rx(r"\b(work|job|business|family|kids|commute|daily driver)\b"),
        ),
        DiscoveryQuestion(
            "features", "Which features are must-haves for you?", 3,
            _rx(r"\b(must[- ]haves?|features? (?:are|matter))\b"),
            _rx(r"\b(tow|towing|4x4|4wd|awd|crew cab|diesel|hybrid|third row|sunroof)\b"),
        ),
        DiscoveryQuestion(
            "test_drive", "Would you like to set up a time for a test drive?", 3,
            _rx(r"\btest drive\b"),
            _rx(r"\btest drive\b"),
        ),
    ]

    STAGE_ACTIONS: Dict[ConversationStage, List[str]] = {
        ConversationStage.DISCOVERY: ["Ask qualifying questions", "Understand needs and timeline"],
        ConversationStage.PRESENTATION: ["Highlight key features", "Address specific interests"],
        ConversationStage.OBJECTION_HANDLING: ["Address concerns directly", "Provide social proof"],
        ConversationStage.CLOSING: ["Present financing options", "Create urgency"],
        ConversationStage.FOLLOW_UP: ["Schedule follow-up call", "Send additional information"],
    }

    def __init__(self):
        self._year_pattern = re.compile(r"\b(19[89]\d|20[0-4]\d)\b")
        self._model_index: List[Tuple[str, str, Pattern]] = []
        for make, models in self.MAKE_MODELS.items():
            for model in models:
                self._model_index.append(
                    (make, model, re.compile(r"\b" + re.escape(model) + r"\b", re.IGNORECASE))
                )
        make_names = list(self.MAKE_MODELS) + list(self.MAKE_ALIASES)
        self._make_pattern = re.compile(
            r"\b(" + "|".join(re.escape(m) for m in make_names) + r")\b", re.IGNORECASE
        )

    def analyze(
        self,
        transcript: Sequence[TranscriptMessage],
        latest_inbound: Optional[str] = None,
        vehicle_interest_text: Optional[str] = None,
    ) -> ConversationAnalysis:
        """
        Analyze a conversation.

        Args:
            transcript: Ordered messages (oldest first)
            latest_inbound: Latest customer message, if not already last in the transcript
            vehicle_interest_text: Free-text vehicle interest stored on the lead

        Returns:
            ConversationAnalysis
        """
        customer_texts = [m.body for m in transcript if m.is_inbound and m.body]
        if latest_inbound and (not customer_texts or customer_texts[-1] != latest_inbound):
            customer_texts.append(latest_inbound)
        sales_texts = [m.body for m in transcript if not m.is_inbound and m.body]

        customer_text = "\n".join(customer_texts)
        lowered = customer_text.lower()

        interest_source = "\n".join(t for t in (vehicle_interest_text, customer_text) if t)
        interest = self.extract_vehicle_interest(interest_source)
        signals = self.detect_buying_signals(customer_text)

        urgent = any(k in lowered for k in self.URGENT_KEYWORDS)
        budget_signal = bool(interest.budget_mentions)

        temperature, breakdown = self.calculate_temperature(signals, interest, urgent, budget_signal)
        stage = self.determine_stage(lowered, signals)
        questions = self.select_discovery_questions(customer_text, sales_texts)
        actions = self.next_best_actions(stage, temperature)

        return ConversationAnalysis(
            vehicle_interest=interest,
            buying_signals=signals,
            temperature=temperature,
            stage=stage,
            discovery_questions=questions,
            next_best_actions=actions,
            urgent=urgent,
            budget_signal=budget_signal,
            temperature_breakdown=breakdown,
        )

    # ── Vehicle interest ──────────────────────────────

    def extract_vehicle_interest(self, text: str) -> VehicleInterest:
        interest = VehicleInterest()
        if not text:
            return interest
        lowered = text.lower()

        year_match = self._year_pattern.search(text)
        if year_match:
            interest.year = int(year_match.group(1))

        make_match = self._make_pattern.search(text)
        if make_match:
            make = make_match.group(1).lower()
            interest.make = self.MAKE_ALIASES.get(make, make)

        for make, model, pattern in self._model_index:
            if interest.make and make != interest.make:
                continue
            if pattern.search(text):
                interest.model = model
                interest.make = interest.make or make
                break

        interest.features = self._extract_features(text)
        interest.use_case = self._classify_use_case(lowered)
        interest.budget_mentions = [k for k in self.BUDGET_KEYWORDS if k in lowered]
        interest.timeline_mentions = [k for k in self.TIMELINE_KEYWORDS if k in lowered]

        confidence = 0.0
        if interest.make:
            confidence += 0.4
        if interest.model:
            confidence += 0.3
        if interest.year:
            confidence += 0.2
        if interest.features:
            confidence += 0.1
        interest.confidence = round(min(confidence, 1.0), 2)
        return interest

    def _extract_features(self, text: str) -> List[VehicleFeature]:
        features: List[VehicleFeature] = []
        sentences = [s for s in re.split(r"[.!?\n]+", text) if s.strip()]
        for name, pattern in self.FEATURE_PATTERNS.items():
            for sentence in sentences:
                match = pattern.search(sentence)
                if match:
                    features.append(VehicleFeature(
                        name=name,
                        mention=match.group(1).lower(),
                        importance=self._feature_importance(sentence.lower()),
                    ))
                    break
        return features

    def _feature_importance(self, sentence: str) -> FeatureImportance:
        if any(re.search(r"\b" + re.escape(w) + r"\b", sentence) for w in self.HIGH_IMPORTANCE_WORDS):
            return FeatureImportance.HIGH
        if any(re.search(r"\b" + re.escape(w) + r"\b", sentence) for w in self.MEDIUM_IMPORTANCE_WORDS):
            return FeatureImportance.MEDIUM
        return FeatureImportance.LOW

    def _classify_use_case(self, lowered: str) -> UseCase:
        best = UseCase.UNKNOWN
        best_hits = 0
        for use_case, keywords in self.USE_CASE_KEYWORDS.items():
            hits = sum(1 for k in keywords if re.search(r"\b" + re.escape(k) + r"\b", lowered))
            if hits > best_hits:
                best, best_hits = use_case, hits
        return best

    # ── Buying signals ────────────────────────────────

    def detect_buying_signals(self, text: str) -> List[BuyingSignal]:
        """Return the strongest signals (max 3), one per family."""
        signals: List[BuyingSignal] = []
        if not text:
            return signals

        for signal_type, patterns in self.SIGNAL_PATTERNS.items():
            weights: List[float] = []
            matches: List[str] = []
            for pattern, weight in patterns:
                match = pattern.search(text)
                if match:
                    weights.append(weight)
                    matches.append(match.group(0).lower())
            if not weights:
                continue
            strength = round(min(max(weights) + 0.05 * (len(weights) - 1), 1.0), 2)
            signals.append(BuyingSignal(
                signal_type=signal_type,
                strength=strength,
                urgency=self._urgency_for(strength),
                matches=matches,
            ))

        order = list(SignalType)
        signals.sort(key=lambda s: (-s.strength, order.index(s.signal_type)))
        return signals[:self.MAX_SIGNALS]

    @staticmethod
    def _urgency_for(strength: float) -> UrgencyTier:
        if strength >= 0.9:
            return UrgencyTier.CRITICAL
        if strength >= 0.75:
            return UrgencyTier.HIGH
        if strength >= 0.5:
            return UrgencyTier.MEDIUM
        return UrgencyTier.LOW

    # ── Temperature & stage ───────────────────────────

    def calculate_temperature(
        self,
        signals: List[BuyingSignal],
        interest: VehicleInterest,
        urgent: bool,
        budget_signal: bool,
    ) -> Tuple[int, Dict[str, float]]:
        breakdown = {
            "base": float(self.BASE_TEMPERATURE),
            "signals": round(sum(s.strength * self.SIGNAL_WEIGHT for s in signals), 2),
            "interest": round(interest.confidence * self.INTEREST_WEIGHT, 2),
            "features": float(len(interest.features) * self.FEATURE_BONUS),
            "urgency": float(self.URGENCY_BONUS if urgent else 0),
            "budget": float(self.BUDGET_BONUS if budget_signal else 0),
        }
        raw = sum(breakdown.values())
        return int(round(max(0.0, min(100.0, raw)))), breakdown

    def determine_stage(self, lowered: str, signals: List[BuyingSignal]) -> ConversationStage:
        if any(s.signal_type == SignalType.READY_TO_BUY and s.strength > self.CLOSING_STRENGTH for s in signals):
            return ConversationStage.CLOSING
        if any(s.signal_type == SignalType.OBJECTION for s in signals):
            return ConversationStage.OBJECTION_HANDLING
        if any(k in lowered for k in self.PRESENTATION_KEYWORDS):
            return ConversationStage.PRESENTATION
        if any(k in lowered for k in self.FOLLOW_UP_KEYWORDS):
            return ConversationStage.FOLLOW_UP
        return ConversationStage.DISCOVERY

    # ── Questions & actions ───────────────────────────

    def select_discovery_questions(self, customer_text: str, sales_texts: List[str]) -> List[str]:
        sales_history = "\n".join(sales_texts)
        candidates = [
            q for q in self.QUESTION_BANK
            if not q.asked_pattern.search(sales_history)
            and not q.answered_pattern.search(customer_text)
        ]
        # sorted() is stable, so bank order breaks priority ties
        candidates = sorted(candidates, key=lambda q: q.priority)
        return [q.question for q in candidates[:self.MAX_QUESTIONS]]

    def next_best_actions(self, stage: ConversationStage, temperature: int) -> List[str]:
        actions: List[str] = []
        if temperature > 80:
            actions += ["Schedule immediate appointment", "Prepare purchase documentation"]
        elif temperature > 60:
            actions += ["Schedule test drive", "Send detailed vehicle information"]
        actions += self.STAGE_ACTIONS[stage]
        return list(dict.fromkeys(actions))[:self.MAX_ACTIONS]
