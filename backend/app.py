"""PairShare 시그널링 서버.

이 모듈은 두 참가자 간 1:1 화면 공유를 위한 시그널링 서버를 제공합니다.
FastAPI와 WebSocket을 사용하여 룸 관리와 WebRTC 협상 메시지 릴레이를 수행하며,
미디어는 서버를 거치지 않고 참가자 간 P2P로 전송됩니다.

주요 기능:
    - 2인 룸 관리 (정원 초과 시 room-full)
    - WebRTC offer/answer 및 ICE candidate 릴레이
    - 룸 채팅 (메모리 내 최근 100개 보관)
    - 화면 공유 시작/종료 알림
    - CORS 설정을 통한 크로스 오리진 요청 지원

Architecture:
    - RoomRegistry: 룸 및 멤버 상태 관리, 메시지 릴레이
    - WebSocket (/ws): 실시간 시그널링 메시지 전송
    - HTTP (/health, /room/{id}, /api/rooms): 상태 조회
"""
import glob
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pairshare.config import settings
from pairshare.signaling import RoomRegistry
from routes import health_router, signaling_router, init_registry


# 로그 설정
os.makedirs(settings.LOG_DIR, exist_ok=True)
log_filename = os.path.join(settings.LOG_DIR, f"server_{datetime.now().strftime('%Y%m%d')}.log")


def cleanup_old_logs(log_dir: str = settings.LOG_DIR, retention_days: int = settings.LOG_RETENTION_DAYS) -> int:
    """오래된 로그 파일을 삭제합니다.

    Args:
        log_dir: 로그 디렉토리 경로
        retention_days: 보관 기간 (일)

    Returns:
        삭제된 파일 수
    """
    if not os.path.exists(log_dir):
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for log_file in glob.glob(os.path.join(log_dir, "server_*.log")):
        try:
            date_str = os.path.basename(log_file).replace("server_", "").replace(".log", "")
            if datetime.strptime(date_str, "%Y%m%d") < cutoff_date:
                os.remove(log_file)
                deleted_count += 1
        except (ValueError, OSError):
            continue

    return deleted_count


logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),  # 콘솔 출력
        logging.FileHandler(log_filename, encoding="utf-8"),  # 파일 저장
    ]
)
logger = logging.getLogger(__name__)
logger.info(f"로깅 초기화 완료: level={settings.LOG_LEVEL}")


# 글로벌 레지스트리 인스턴스
room_registry = RoomRegistry.from_settings(settings)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI 앱의 생명주기를 관리하는 컨텍스트 매니저.

    Args:
        app (FastAPI): FastAPI 애플리케이션 인스턴스

    Yields:
        None: 앱이 실행되는 동안 제어를 반환

    Note:
        - 시작: 오래된 로그 정리
        - 종료: 예약된 빈 룸 삭제 타이머 취소
    """
    logger.info("PairShare 시그널링 서버 시작 중...")

    deleted_logs = cleanup_old_logs()
    if deleted_logs > 0:
        logger.info(f"오래된 로그 파일 {deleted_logs}개 정리 완료 ({settings.LOG_RETENTION_DAYS}일 이상)")

    yield

    logger.info("서버 종료 중...")
    await room_registry.close()


app = FastAPI(title="PairShare Signaling Server", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials="*" not in settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(health_router)
app.include_router(signaling_router)

# 라우터에 레지스트리 인스턴스 전달
init_registry(room_registry)


@app.get("/")
async def root():
    """서버 상태 확인 엔드포인트.

    Returns:
        dict: 서버 상태 정보를 포함하는 딕셔너리

    Examples:
        >>> response = await root()
        >>> print(response)
        {"status": "ok", "service": "PairShare Signaling Server"}
    """
    return {"status": "ok", "service": "PairShare Signaling Server"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level="info")
