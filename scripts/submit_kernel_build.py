import sys
import time
import requests
from pathlib import Path

API_URL = "http://localhost:8080/kernel"


def submit_build(source_dir, config_path, compiler="gcc"):
    payload = {
        "source_dir": source_dir,
        "compiler": compiler,
        "config": Path(config_path).read_text(),
    }
    response = requests.post(f"{API_URL}/build", json=payload)
    response.raise_for_status()
    return response.json()


def wait_for(job_id, poll=10):
    while True:
        status = requests.get(f"{API_URL}/job/{job_id}").json()
        if status.get("status") in ("SUCCESS", "FAILED"):
            return status
        time.sleep(poll)


# usage: submit_kernel_build.py /path/to/linux /path/to/.config [compiler]
source_dir, config_path = sys.argv[1], sys.argv[2]
compiler = sys.argv[3] if len(sys.argv) > 3 else "gcc"

result = submit_build(source_dir, config_path, compiler)
print(f"Job ID: {result['job_id']}")
final = wait_for(result["job_id"])
print(f"  {final['status']}: {final.get('message') or 'ok'}")
