import requests
import time
import os

API_BASE = "http://localhost:8001/api"


def wait_for_job(job_id):
    while True:
        status_resp = requests.get(f"{API_BASE}/jobs/{job_id}/status").json()
        status = status_resp["status"]
        progress = status_resp["progress"]

        print(f"⏳ Status: {status} ({progress}%)")

        if status == "completed":
            return True
        if status == "failed":
            print(f"❌ Job failed: {status_resp.get('errorMessage')}")
            return False

        time.sleep(2)


def save_output(job_id):
    print("⬇️ Downloading result...")
    result_resp = requests.get(f"{API_BASE}/jobs/{job_id}/file")
    result_resp.raise_for_status()

    # Server suggests a name in Content-Disposition
    disposition = result_resp.headers.get("Content-Disposition", "")
    output_name = disposition.split("filename=")[-1].strip('"') or f"result_{job_id}"
    with open(output_name, "wb") as f:
        f.write(result_resp.content)

    print(f"💾 Saved {len(result_resp.content)} bytes to: {output_name}")


def download_video(url, fmt="mp4"):
    print(f"📤 Submitting download: {url}...")
    resp = requests.post(f"{API_BASE}/jobs", json={
        "inputRef": url,
        "operationKind": "download",
        "operationOptions": {"format": fmt},
    })
    if resp.status_code != 202:
        print(f"❌ Failed to submit: {resp.text}")
        return

    job_id = resp.json()["jobId"]
    print(f"✅ Job created: {job_id}")
    if wait_for_job(job_id):
        save_output(job_id)


def trim_file(file_path, start, end):
    if not os.path.exists(file_path):
        print(f"File not found: {file_path}")
        return

    # 1. Upload
    with open(file_path, "rb") as f:
        resp = requests.post(f"{API_BASE}/uploads", files={"file": (os.path.basename(file_path), f, "video/mp4")})
    if resp.status_code != 201:
        print(f"❌ Failed to upload: {resp.text}")
        return
    file_id = resp.json()["fileId"]

    # 2. Submit the trim job
    resp = requests.post(f"{API_BASE}/jobs", json={
        "inputRef": file_id,
        "operationKind": "trim",
        "operationOptions": {"startTime": start, "endTime": end},
    })
    if resp.status_code != 202:
        print(f"❌ Failed to submit: {resp.text}")
        return

    job_id = resp.json()["jobId"]
    print(f"✅ Job created: {job_id}")
    if wait_for_job(job_id):
        save_output(job_id)


if __name__ == "__main__":
    # Example usage
    # download_video("https://www.youtube.com/watch?v=...")
    # trim_file("path/to/video.mp4", "00:00:10", "00:00:40")
    print("Tip: Call download_video('https://youtube.com/watch?v=...') to test.")
