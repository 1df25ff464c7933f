"""
AroundYou Conversational Commerce

A tool-calling shopping assistant: a dialogue engine that hands model-selected
operations to a function dispatcher, and a five-step intelligent search across
nearby shops with per-turn progress reporting.
"""

from aroundyou.models import (
    Message,
    MessageRole,
    ToolCall,
    ConversationState,
    TurnResult,
    ExtractedItem,
    SearchIntent,
    SearchProgress,
    StepId,
    StepStatus,
    ShopSearchResult,
    ScoredItem,
    FunctionCallRequest,
    FunctionResult,
    UserContext,
    UserPreference,
    PreferenceValue,
    DeliveryLogic,
    Coordinates
)
from aroundyou.errors import (
    CommerceError,
    NetworkError,
    CallTimeoutError,
    MalformedFunctionArguments,
    UnknownFunctionError,
    UpstreamSearchFailure,
    BusinessValidationError,
    SnapshotCorruptedError
)
from aroundyou.schemas import FUNCTION_REGISTRY, SCHEMA_VERSION, TOOLS, validate_arguments
from aroundyou.delivery import calculate_delivery_fee, delivery_fee_for
from aroundyou.progress import ProgressBroadcaster
from aroundyou.search import IntelligentSearchPipeline, normalize_relevance, format_relevance
from aroundyou.dispatcher import FunctionDispatcher
from aroundyou.conversation import ConversationSession, TurnStream
from aroundyou.chatbot import ShoppingAssistant

__version__ = "1.0.0"
__all__ = [
    "Message",
    "MessageRole",
    "ToolCall",
    "ConversationState",
    "TurnResult",
    "ExtractedItem",
    "SearchIntent",
    "SearchProgress",
    "StepId",
    "StepStatus",
    "ShopSearchResult",
    "ScoredItem",
    "FunctionCallRequest",
    "FunctionResult",
    "UserContext",
    "UserPreference",
    "PreferenceValue",
    "DeliveryLogic",
    "Coordinates",
    "CommerceError",
    "NetworkError",
    "CallTimeoutError",
    "MalformedFunctionArguments",
    "UnknownFunctionError",
    "UpstreamSearchFailure",
    "BusinessValidationError",
    "SnapshotCorruptedError",
    "FUNCTION_REGISTRY",
    "SCHEMA_VERSION",
    "TOOLS",
    "validate_arguments",
    "calculate_delivery_fee",
    "delivery_fee_for",
    "ProgressBroadcaster",
    "IntelligentSearchPipeline",
    "normalize_relevance",
    "format_relevance",
    "FunctionDispatcher",
    "ConversationSession",
    "TurnStream",
    "ShoppingAssistant",
]
