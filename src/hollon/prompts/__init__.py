from hollon.prompts.composer import ComposedPrompt, PromptComposer, fit_to_budget
from hollon.prompts.layers import extract_keywords

__all__ = ["ComposedPrompt", "PromptComposer", "extract_keywords", "fit_to_budget"]
