from vendorsign.worker.main import run

run()
