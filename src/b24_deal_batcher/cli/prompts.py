"""Interactive terminal prompts for the run wizard."""

from typing import Callable, Optional, Sequence, TypeVar

from b24_deal_batcher.errors import ValidationError
from b24_deal_batcher.wizard.parsing import parse_index

T = TypeVar("T")

InputFn = Callable[[str], str]


def question(prompt: str, input_fn: Optional[InputFn] = None) -> str:
    return (input_fn or input)(prompt).strip()


def ask_until_valid(prompt: str, parse: Callable[[str], T], input_fn: Optional[InputFn] = None) -> T:
    """Re-prompt until `parse` accepts the answer."""
    while True:
        try:
            return parse(question(prompt, input_fn))
        except ValidationError as e:
            print(e)


def choose_from(
    items: Sequence[T],
    label: Callable[[T], str],
    prompt: str = "Choose index: ",
    input_fn: Optional[InputFn] = None,
) -> T:
    """Print a numbered list and return the chosen item."""
    if not items:
        raise ValidationError("Nothing to choose from.")
    for idx, item in enumerate(items):
        print(f"{idx}: {label(item)}")
    idx = ask_until_valid(prompt, lambda text: parse_index(text, len(items)), input_fn)
    return items[idx]


def find_by_key(items: Sequence[T], key: Callable[[T], str], wanted: Optional[str]) -> Optional[T]:
    if wanted is None:
        return None
    for item in items:
        if str(key(item)) == str(wanted):
            return item
    raise ValidationError(f"Not found: {wanted}")
