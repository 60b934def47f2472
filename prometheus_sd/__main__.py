from prometheus_sd.cli import main

main(prog_name="prometheus-sd")
