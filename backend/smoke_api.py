"""Walk one round against a running backend: python smoke_api.py"""
import os

import requests

BASE_URL = os.getenv("BRAINPLAY_URL", "http://127.0.0.1:8000")
HEADERS = {"X-User-Id": "smoke-test"}


def main():
    # 1) Health check
    r = requests.get(f"{BASE_URL}/api/health")
    print("Health:", r.status_code, r.text)

    # 2) Start a spot-the-difference round (slow: two images are generated)
    r = requests.post(
        f"{BASE_URL}/api/start",
        json={"mode": "DIFF", "subject": "a busy farmers market"},
        headers=HEADERS,
        timeout=180,
    )
    data = r.json()
    print("\nStart:", r.status_code, {k: data.get(k) for k in ("phase", "subject", "total_items", "error")})
    session_id = data.get("session_id")
    if r.status_code != 200:
        return

    # 3) Batch guess
    r = requests.post(
        f"{BASE_URL}/api/guess",
        json={"sessionId": session_id, "guess": "a missing apple, the sign changed color"},
        headers=HEADERS,
    )
    print("\nGuess:", r.status_code, r.json()["result"])

    # 4) Click the middle of a 600x600 image
    r = requests.post(
        f"{BASE_URL}/api/click",
        json={
            "session_id": session_id,
            "x": 300,
            "y": 300,
            "image": {"left": 0, "top": 0, "width": 600, "height": 600},
        },
        headers=HEADERS,
    )
    print("\nClick:", r.status_code, r.json()["result"])

    # 5) Give up and see the answers
    r = requests.post(f"{BASE_URL}/api/give-up", json={"session_id": session_id}, headers=HEADERS, timeout=180)
    over = r.json()
    print("\nGive up:", r.status_code, "score=", over.get("score"), "retro=", over.get("retro_points"))
    for item in over.get("revealed_items", []):
        print("  -", item["description"], item["box_2d"])

    # 6) History
    r = requests.get(f"{BASE_URL}/api/history", headers=HEADERS)
    print("\nHistory:", r.status_code, len(r.json()["sessions"]), "rounds")


if __name__ == "__main__":
    main()
