"""Language front end: lexer, parser, AST types and validator."""

from sdl.core.parser import parse, ParseResult
from sdl.core.validator import validate, ValidationResult, CausalGraph

__all__ = ["parse", "ParseResult", "validate", "ValidationResult", "CausalGraph"]
