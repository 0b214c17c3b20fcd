# scripts/gen_dummy_stack.py – write synthetic sky subframes for trying the analysis
import argparse
import json
import pathlib
from datetime import datetime, timedelta

import numpy as np
import tifffile

parser = argparse.ArgumentParser()
parser.add_argument("outdir", type=pathlib.Path)
parser.add_argument("-n", "--num", type=int, default=24)
parser.add_argument("--filter", default="L")
parser.add_argument("--exptime", type=float, default=300.0)
parser.add_argument("--size", type=int, default=960)
parser.add_argument("--seed", type=int, default=0)
args = parser.parse_args()

args.outdir.mkdir(parents=True, exist_ok=True)
rng = np.random.default_rng(args.seed)
yy, xx = np.mgrid[: args.size, : args.size]
c = args.size / 3.0
nebula = 0.04 * np.exp(-((yy - c) ** 2 + (xx - c) ** 2) / (2 * (args.size / 10.0) ** 2))
t0 = datetime(2024, 1, 1, 22, 0, 0)
for i in range(args.num):
    img = 0.1 + nebula + rng.normal(0.0, 0.01, size=nebula.shape)
    meta = {
        "EXPTIME": args.exptime,
        "FILTER": args.filter,
        "DATE-OBS": (t0 + timedelta(seconds=i * args.exptime)).strftime("%Y-%m-%dT%H:%M:%S"),
    }
    data = (np.clip(img, 0.0, 1.0) * 65535).astype(np.uint16)
    tifffile.imwrite(args.outdir / f"{args.filter}_{i:04d}.tif", data, description=json.dumps(meta), metadata=None)
print("Dummy stack written:", args.outdir)
