# facegate/scripts/scan.py
import argparse
import sys
from facegate.camera import OpenCVCamera
from facegate.config import settings
from facegate.gate import ForegroundGate, default_detector
from facegate.gateway_client import GatewayClient
from facegate.scan import ScanPhase, ScanSession, SchedTimers

EXIT_CODES = {
    ScanPhase.CONFIRMED: 0,
    ScanPhase.TIMED_OUT: 1,
    ScanPhase.CAMERA_ERROR: 2,
    ScanPhase.CANCELLED: 3,
}

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run one face scan against the gateway")
    parser.add_argument("--gateway", default=settings.gateway_url)
    parser.add_argument("--camera", type=int, default=settings.camera_index)
    args = parser.parse_args(argv)

    timers = SchedTimers()
    session = ScanSession(
        gateway=GatewayClient(args.gateway, report_timeout=settings.metrics_report_timeout_s),
        camera_factory=lambda: OpenCVCamera(args.camera),
        gate=ForegroundGate(default_detector(), settings),
        timers=timers,
        settings=settings,
        on_hint=lambda text: print(f"[hint] {text}"),
        on_return_home=lambda s: print("[scan] returning home"),
    )
    session.start()
    try:
        timers.run()
    except KeyboardInterrupt:
        session.cancel()

    res = session.result()
    if res.phase == ScanPhase.CONFIRMED:
        print(f"[scan] welcome back, {res.name or res.user_id} ({res.elapsed_s:.2f}s, {res.remote_calls} calls)")
    else:
        print(f"[scan] {res.phase.value} error_class={res.error_class} calls={res.remote_calls}")
    return EXIT_CODES.get(res.phase, 1)

if __name__ == "__main__":
    sys.exit(main())
