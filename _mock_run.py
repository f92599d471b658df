import sys
import tempfile
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent))

from tbi_dementia_pipeline.main import main
from tbi_dementia_pipeline.synthetic import make_synthetic_donors

N_DONORS = 400

with tempfile.TemporaryDirectory() as tmp:
    csv_path = Path(tmp) / "DonorInformation.csv"
    make_synthetic_donors(n=N_DONORS, seed=42).to_csv(csv_path, index=False)
    result = main(csv_path=csv_path, output_dir=Path(tmp) / "outputs")
    print(result.tables.sample_flow.to_string(index=False))
    print("retained confounders:", result.selection.retained)

print('MOCK_RUN_SUCCESS')
