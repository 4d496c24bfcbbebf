from memkeep.memory.tracker import CrossThreadTracker


def test_repeat_needs_distinct_threads() -> None:
    tracker = CrossThreadTracker(repeat_threshold=2)
    tracker.observe("u1", "my favorite color", "t1")
    tracker.observe("u1", "my favorite color", "t1")
    assert tracker.thread_count("u1", "my favorite color") == 1
    assert not tracker.is_repeated("u1", "my favorite color")

    observation = tracker.observe("u1", "my favorite color", "t2")
    assert observation.count == 3
    assert observation.thread_ids == {"t1", "t2"}
    assert tracker.is_repeated("u1", "my favorite color")


def test_observe_returns_a_copy() -> None:
    tracker = CrossThreadTracker()
    observation = tracker.observe("u1", "topic", "t1")
    observation.thread_ids.add("t9")
    assert tracker.thread_count("u1", "topic") == 1


def test_topics_per_user_are_capped_lru() -> None:
    tracker = CrossThreadTracker(max_topics_per_user=2)
    tracker.observe("u1", "a", "t1")
    tracker.observe("u1", "b", "t1")
    tracker.observe("u1", "a", "t2")
    tracker.observe("u1", "c", "t1")

    assert tracker.thread_count("u1", "b") == 0
    assert tracker.thread_count("u1", "a") == 2
    assert tracker.thread_count("u1", "c") == 1
    assert tracker.stats() == {"users": 1, "topics": 2, "evictions": 1}


def test_users_are_capped_lru() -> None:
    tracker = CrossThreadTracker(max_users=2)
    tracker.observe("u1", "a", "t1")
    tracker.observe("u2", "a", "t1")
    tracker.observe("u3", "a", "t1")
    assert tracker.thread_count("u1", "a") == 0
    assert tracker.thread_count("u3", "a") == 1
    assert tracker.stats()["users"] == 2


def test_missing_thread_id_counts_but_adds_no_thread() -> None:
    tracker = CrossThreadTracker()
    observation = tracker.observe("u1", "topic", None)
    assert observation.count == 1
    assert observation.thread_ids == set()


def test_clear() -> None:
    tracker = CrossThreadTracker()
    tracker.observe("u1", "a", "t1")
    tracker.observe("u2", "a", "t1")
    tracker.clear("u1")
    assert tracker.stats()["users"] == 1
    tracker.clear()
    assert tracker.stats()["users"] == 0
