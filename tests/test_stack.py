from taskconsole.stack import ContextId, SpanStack


def test_push_new_span_returns_true():
    stack = SpanStack()
    assert stack.push(1) is True
    assert list(stack) == [1]


def test_push_duplicate_returns_false():
    stack = SpanStack()
    stack.push(1)
    assert stack.push(1) is False
    assert stack.entries() == (ContextId(1, False), ContextId(1, True))


def test_iteration_skips_duplicates():
    stack = SpanStack()
    for span in (1, 2, 1):
        stack.push(span)
    assert list(stack) == [1, 2]


def test_pop_missing_returns_false():
    stack = SpanStack()
    stack.push(1)
    assert stack.pop(2) is False
    assert list(stack) == [1]


def test_pop_removes_most_recent_entry():
    stack = SpanStack()
    stack.push(1)
    stack.push(1)
    assert stack.pop(1) is False
    assert stack.entries() == (ContextId(1, False),)
    assert stack.pop(1) is True
    assert stack.entries() == ()


def test_pop_from_middle_keeps_order():
    stack = SpanStack()
    for span in (1, 2, 3):
        stack.push(span)
    assert stack.pop(2) is True
    assert list(stack) == [1, 3]