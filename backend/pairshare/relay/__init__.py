"""릴레이 채널 모듈.

Classes:
    RelayChannel: 시그널링 서버와의 WebSocket 채널 (자동 재연결)
"""

from .channel import RelayChannel

__all__ = ["RelayChannel"]
