from lilroot.modules.events import LogFeed, StateChannel


def test_state_channel_replays_and_unsubscribes():
    channel = StateChannel("idle")
    seen = []
    unsubscribe = channel.subscribe(seen.append)
    channel.publish("running")
    unsubscribe()
    channel.publish("stopped")

    assert seen == ["idle", "running"]
    assert channel.value == "stopped"


def test_failing_subscriber_does_not_break_publish():
    channel = StateChannel(0)
    seen = []

    def broken(value):
        raise RuntimeError("observer bug")

    channel.subscribe(broken, replay=False)
    channel.subscribe(seen.append, replay=False)
    channel.publish(1)

    assert seen == [1]


def test_log_feed_drops_oldest_lines():
    feed = LogFeed(maxlen=3)
    received = []
    feed.subscribe(received.append)
    for i in range(5):
        feed(f"line {i}")

    assert feed.lines() == ["line 2", "line 3", "line 4"]
    assert len(received) == 5
    feed.clear()
    assert feed.lines() == []
