"""
Property-based tests for packet translation

Universal properties of the relay formats: bridge traffic is never relayed
back, other channels never leak, and unknown senders always render as an
eight digit hex id.
"""

from hypothesis import given, strategies as st

from core.config import BrokerTransportConfig
from mesh.node_directory import NodeDirectory
from mesh.packet_translator import PacketTranslator
from models.message import OUTBOUND_TAG_PREFIX, RelayMessage
from tests.mocks.meshtastic_mocks import make_text_packet


node_ids = st.integers(min_value=0, max_value=0xFFFFFFFF)
channels = st.integers(min_value=0, max_value=7)
mesh_text = st.text(min_size=1).filter(lambda t: not t.startswith(OUTBOUND_TAG_PREFIX))
topic_segments = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789!", min_size=1, max_size=8)


def received(packet):
    """Round a sent packet through the wire format"""
    copy = type(packet)()
    copy.ParseFromString(packet.SerializeToString())
    return copy


class TestRelayFormatProperties:

    @given(sender=st.text(min_size=1), content=st.text(), channel=channels)
    def test_bridge_transmissions_are_never_relayed_back(self, sender, content, channel):
        translator = PacketTranslator(channel, NodeDirectory())

        packet = received(translator.encode(RelayMessage(sender, content)))

        assert packet.decoded.payload.decode('utf-8') == f"[IRC-{sender}] {content}"
        assert translator.decode(packet) is None

    @given(text=mesh_text, sender=node_ids, channel=channels)
    def test_unknown_sender_renders_as_hex(self, text, sender, channel):
        translator = PacketTranslator(channel, NodeDirectory())

        rendered = translator.decode(make_text_packet(text, sender=sender, channel=channel))

        assert rendered == f"[mesh-{sender:08x}]: {text}"
        name = rendered[len("[mesh-"):rendered.index("]")]
        assert len(name) == 8
        assert int(name, 16) == sender

    @given(text=mesh_text, configured=channels, actual=channels, packet_id=st.integers(1, 0xFFFFFFFF))
    def test_other_channels_never_leak(self, text, configured, actual, packet_id):
        translator = PacketTranslator(configured, NodeDirectory())
        packet = make_text_packet(text, channel=actual, packet_id=packet_id, want_ack=True)

        relayed = translator.decode(packet) is not None

        assert relayed == (configured == actual)
        assert translator.should_acknowledge(packet) == (configured == actual)

    @given(text=mesh_text, sender=node_ids, names=st.lists(st.text(max_size=4), min_size=1))
    def test_last_announced_name_is_used(self, text, sender, names):
        directory = NodeDirectory()
        translator = PacketTranslator(0, directory)
        for name in names:
            directory.update(sender, name)

        expected = next((name for name in reversed(names) if name), f"{sender:08x}")

        assert translator.decode(make_text_packet(text, sender=sender)) == f"[mesh-{expected}]: {text}"


class TestPublishTopicProperties:

    @given(prefix=st.lists(topic_segments, max_size=4), wildcard=st.sampled_from(["#", "+"]),
           suffix=st.lists(topic_segments, max_size=2))
    def test_publish_topic_has_no_wildcards(self, prefix, wildcard, suffix):
        topic = "/".join(prefix + [wildcard] + (suffix if wildcard == "+" else []))
        config = BrokerTransportConfig(address="mqtt.local", topic=topic, channel_name="LongFast", gateway_id="gw")

        publish_topic = config.resolve_publish_topic()

        assert "#" not in publish_topic.split("/")
        assert "+" not in publish_topic.split("/")
        assert publish_topic == "/".join(prefix + ["LongFast", "gw"])
