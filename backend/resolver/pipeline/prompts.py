"""Fixed replies the pipeline sends instead of a generated answer."""

POLICY_BLOCKED_MESSAGE = (
    "I'm unable to process that request due to our content policies. "
    "Please rephrase your question or contact our support team directly."
)

LOW_CONFIDENCE_MESSAGE = (
    "I'm sorry, I don't have enough information to answer that question confidently. "
    "Let me connect you with a human agent who can help."
)

GENERATION_ERROR_MESSAGE = (
    "I apologize, but I encountered an error generating a response. "
    "Please try again or contact support."
)

POST_POLICY_FALLBACK_MESSAGE = (
    "I have an answer but it didn't pass our quality checks. "
    "Let me connect you with a human agent."
)
